"""
Entry point for running screentrans as a module.

Usage:
    python -m screentrans --help
    python -m screentrans translate --text "Hello" --target zh
    python -m screentrans ocr screenshot.png --translate
"""
from .cli import app


if __name__ == "__main__":
    app()
