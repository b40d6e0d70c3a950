"""
Tests for CLI argument handling that needs no providers.
"""

from typer.testing import CliRunner

from screentrans import __version__
from screentrans.cli import app

runner = CliRunner()


class TestCLI:
    """Test the command-line entry points."""

    def test_version(self):
        """Test --version prints the version."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_translate_requires_input(self):
        """Test translate without text or file fails."""
        result = runner.invoke(app, ["translate"])
        assert result.exit_code == 1
        assert "Provide either --text or --input" in result.output

    def test_ocr_missing_file(self, tmp_path):
        """Test ocr reports a missing image."""
        result = runner.invoke(app, ["ocr", str(tmp_path / "missing.png")])
        assert result.exit_code == 1
        assert "File not found" in result.output

    def test_batch_missing_file(self, tmp_path):
        """Test batch reports a missing input file."""
        result = runner.invoke(app, ["batch", str(tmp_path / "missing.txt")])
        assert result.exit_code == 1
