import io
from pathlib import Path

import pytest

import ripit_cli
from ripit_cli import ConfigError, build_config, build_parser, default_folder, normalize_after
from ripit_core import UNLIMITED, TerminationReason


def parse(*argv):
    return build_parser().parse_args(list(argv))


def test_default_folder():
    assert default_folder("r/pics") == "pics"
    assert default_folder("r/pics/") == "pics"
    assert default_folder("user/someone/submitted") == "user.someone.submitted"
    assert default_folder("") == "frontpage"


def test_normalize_after_adds_prefix():
    assert normalize_after("abc") == "t3_abc"
    assert normalize_after("t3_abc") == "t3_abc"
    assert normalize_after("") == ""


def test_build_config_converts_units(tmp_path):
    config = build_config(parse("r/pics", "--max-storage", "5", "--max-size", "300",
                                "--folder", str(tmp_path), "--after", "zz"))
    assert config.max_storage == 5 * 1000 * 1000
    assert config.max_size == 300 * 1000
    assert config.max_files == UNLIMITED
    assert config.after == "t3_zz"
    assert config.folder == Path(tmp_path)


def test_dry_run_is_verbose_unless_printing_post_data():
    assert build_config(parse("r/pics", "-d")).debug is True
    config = build_config(parse("r/pics", "--print-post-data"))
    assert config.dry_run is True
    assert config.debug is False
    assert config.post_data_output is not None


@pytest.mark.parametrize("argv", [
    ("r/pics", "--max-files", "0"),
    ("r/pics", "--max-storage", "-5"),
    ("r/pics", "-d", "--max-size", "10"),
    ("r/pics", "--preview-res", "640"),
    ("r/pics", "--prefer-preview", "--download-preview"),
    ("r/pics", "--sort", "top-decade"),
    ("r/pics", "--title-contains", "("),
    ("r/pics", "--template-filter", "{{ oops"),
    ("r/pics", "--log-post-links", "same.txt", "--log-media-links", "same.txt"),
])
def test_invalid_flags_are_rejected(argv):
    with pytest.raises(ConfigError):
        build_config(parse(*argv))


def test_media_link_format_defaults_to_final_url(tmp_path):
    links = tmp_path / "media.txt"
    config = build_config(parse("r/pics", "--log-media-links", str(links)))
    try:
        assert config.media_link_format.render(final_url="u") == "u"
    finally:
        config.media_links_file.close()


def test_main_reports_config_errors(capsys):
    assert ripit_cli.main(["r/pics", "--max-files", "0"]) == 1
    assert "Invalid value for option --max-files" in capsys.readouterr().err


@pytest.mark.parametrize("reason", list(TerminationReason))
def test_every_termination_reason_exits_zero(monkeypatch, tmp_path, reason):
    monkeypatch.setattr(ripit_cli.RipCore, "run", lambda self: reason)
    monkeypatch.setattr(ripit_cli.RipCLI, "_install_signal_handlers", lambda self: None)
    config = build_config(parse("r/pics", "--folder", str(tmp_path / "out")))

    assert ripit_cli.RipCLI(status_stream=io.StringIO()).run(config) == 0
    assert (tmp_path / "out").is_dir()


def test_fatal_listing_error_exits_one(monkeypatch, tmp_path):
    def boom(self):
        raise ripit_cli.ListingDecodeError("bad page")

    monkeypatch.setattr(ripit_cli.RipCore, "run", boom)
    monkeypatch.setattr(ripit_cli.RipCLI, "_install_signal_handlers", lambda self: None)
    status = io.StringIO()
    config = build_config(parse("r/pics", "--folder", str(tmp_path)))

    assert ripit_cli.RipCLI(status_stream=status).run(config) == 1
    assert "Cannot read listing: bad page" in status.getvalue()
