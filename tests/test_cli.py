# tests/test_cli.py
"""Test the command line interface"""

import pytest
from click.testing import CliRunner

from lyricslides.cli import _load_batch_file, cli
from lyricslides.core.exceptions import GenerationParamsError


@pytest.fixture
def config_file(temp_dir):
    path = temp_dir / "config.yaml"
    path.write_text(f'cache:\n  directory: "{temp_dir / "cache"}"\n', encoding="utf-8")
    return path


@pytest.fixture
def runner():
    return CliRunner()


class TestCommands:
    """Test commands that need no provider access"""

    def test_templates(self, runner, config_file):
        result = runner.invoke(cli, ["--config", str(config_file), "templates"])
        assert result.exit_code == 0
        assert "default" in result.output
        assert "worship" in result.output

    def test_unknown_template(self, runner, config_file):
        result = runner.invoke(cli, ["--config", str(config_file), "templates", "--show", "nope"])
        assert result.exit_code == 2
        assert "Unknown template" in result.output

    def test_cache_size(self, runner, config_file, temp_dir):
        result = runner.invoke(cli, ["--config", str(config_file), "cache", "size"])
        assert result.exit_code == 0
        assert "Images:          0" in result.output

    def test_cache_clear(self, runner, config_file):
        result = runner.invoke(cli, ["--config", str(config_file), "cache", "clear", "--yes"])
        assert result.exit_code == 0
        assert "Deleted 0 cached image(s)" in result.output

    def test_cache_clear_asks_first(self, runner, config_file):
        result = runner.invoke(cli, ["--config", str(config_file), "cache", "clear"], input="n\n")
        assert result.exit_code == 1

    def test_generate_needs_input(self, runner, config_file):
        result = runner.invoke(cli, ["--config", str(config_file), "generate"])
        assert result.exit_code == 2

    def test_unknown_provider(self, runner, config_file):
        result = runner.invoke(cli, ["--config", str(config_file), "check-key", "midjourney", "key"])
        assert result.exit_code == 2
        assert "Available providers: openai, stabilityai" in result.output

    def test_invalid_config(self, runner, temp_dir):
        path = temp_dir / "broken.yaml"
        path.write_text("generation:\n  concurrency: 0\n", encoding="utf-8")
        result = runner.invoke(cli, ["--config", str(path), "templates"])
        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestBatchFile:
    """Test parsing of batch files"""

    def test_songs_with_lyrics_files(self, temp_dir, sample_lyrics):
        (temp_dir / "grace.txt").write_text(sample_lyrics, encoding="utf-8")
        batch_file = temp_dir / "setlist.yaml"
        batch_file.write_text(
            "songs:\n"
            "  - song_title: Amazing Grace\n"
            "    artist: Traditional\n"
            "    lyrics_file: grace.txt\n"
            "  - prompt: A calm sunrise\n"
            "    provider: openai\n"
            "    orientation: square\n",
            encoding="utf-8",
        )

        params_list = _load_batch_file(batch_file, default_provider="stability")

        assert params_list[0].lyrics == sample_lyrics
        assert params_list[0].provider == "stability"
        assert params_list[1].provider == "openai"
        assert params_list[1].orientation == "square"

    def test_plain_list(self, temp_dir):
        batch_file = temp_dir / "setlist.yaml"
        batch_file.write_text("- song_title: One\n- song_title: Two\n", encoding="utf-8")
        assert [p.song_title for p in _load_batch_file(batch_file, None)] == ["One", "Two"]

    def test_unknown_key(self, temp_dir):
        batch_file = temp_dir / "setlist.yaml"
        batch_file.write_text("- song_title: One\n  colour: blue\n", encoding="utf-8")
        with pytest.raises(GenerationParamsError):
            _load_batch_file(batch_file, None)

    def test_not_a_list(self, temp_dir):
        batch_file = temp_dir / "setlist.yaml"
        batch_file.write_text("just a string\n", encoding="utf-8")
        with pytest.raises(GenerationParamsError):
            _load_batch_file(batch_file, None)
