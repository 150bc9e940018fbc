import pytest

from ripit_utils import (
    compile_template,
    extract_og_url,
    format_size,
    is_false_value,
    render_template,
    sanitize_filename,
)


@pytest.mark.parametrize("name,strict,minimal", [
    ('a<b>:c"d|e?f*g.jpg', "a&lt;b&gt;-c&quot;defg.jpg", 'a<b>:c"d|e?f*g.jpg'),
    ("dir/name\\x.png", "dirnamex.png", "dirnamex.png"),
    ("  . trailing. ", "trailing", "trailing"),
    ("NUL.txt", "__NUL.txt", "__NUL.txt"),
    ("com1.tar.gz", "__com1.tar.gz", "__com1.tar.gz"),
    ("//", "__Blank__", "__Blank__"),
])
def test_sanitize_filename(name, strict, minimal):
    assert sanitize_filename(name) == strict
    assert sanitize_filename(name, allow_special_chars=True) == minimal


def test_sanitize_strict_drops_control_characters():
    assert sanitize_filename("a\tb\nc.jpg") == "abc.jpg"


HEAD_PAGE = """
<html><head>
  <meta charset="utf-8">
  <meta property="og:title" content="Hello">
  <meta property="og:image" content="https://cdn.example.com/img.png">
  <meta property="og:video" content="https://cdn.example.com/vid.mp4">
</head><body>
  <meta property="og:image" content="https://cdn.example.com/body.png">
</body></html>
"""


@pytest.mark.parametrize("og_type,expected", [
    ("image", "https://cdn.example.com/img.png"),
    ("video", "https://cdn.example.com/vid.mp4"),
    ("any", "https://cdn.example.com/img.png"),
])
def test_extract_og_url(og_type, expected):
    assert extract_og_url(HEAD_PAGE, og_type) == expected


def test_extract_og_url_ignores_body_meta_tags():
    page = '<html><head><title>x</title></head><body><meta property="og:image" content="b.png"></body></html>'
    assert extract_og_url(page, "image") is None


def test_extract_og_url_rejects_unknown_type():
    with pytest.raises(ValueError):
        extract_og_url(HEAD_PAGE, "audio")


@pytest.mark.parametrize("value,expected", [
    (None, "Unknown length"),
    (-1, "Unknown length"),
    (999, "999B"),
    (1000, "1000B"),
    (1500, "1.5KB"),
    (2500000, "2.5MB"),
    (3 * 10 ** 9 + 1, "3.0GB"),
])
def test_format_size(value, expected):
    assert format_size(value) == expected


@pytest.mark.parametrize("rendered,falsy", [
    ("", True), ("  ", True), ("False", True), ("nil", True), ("0", True), ("None", True),
    ("True", False), ("1", False), ("no", False),
])
def test_is_false_value(rendered, falsy):
    assert is_false_value(rendered) is falsy


def test_render_template_over_post_fields():
    template = compile_template("{{ subreddit }}/{{ id }}")
    assert render_template(template, {"subreddit": "pics", "id": "x1"}) == "pics/x1"


def test_missing_keys_render_as_no_value():
    template = compile_template("{{ crosspost_parent }}|{{ media.oembed.url }}")
    rendered = render_template(template, {"id": "x1"})
    assert rendered == "<no value>|<no value>"
    assert is_false_value(rendered) is False
