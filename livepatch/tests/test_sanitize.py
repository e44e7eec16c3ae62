# livepatch/tests/test_sanitize.py
import json

import pytest

from livepatch.rule_config import (
    DEFAULT_DEPRECATION_MAPPINGS,
    iter_mappings,
    load_deprecation_mappings,
    load_security_patterns,
    parse_target,
)
from livepatch.sanitize import (
    SQL_INJECTION,
    XSS,
    HtmlEscaper,
    SecurityPatternSet,
    SqlSanitizer,
    escape_html,
    sanitize_sql,
)
from livepatch.shims import SUPPORTED_SHIMS, add_exact, delete_if_exists, resolve_shim, url_encode


@pytest.mark.parametrize(
    "query",
    [
        "SELECT * FROM users WHERE name = '' or '1'='1'",
        "SELECT * FROM users WHERE id = 1; DROP TABLE users",
        "SELECT * FROM t WHERE a = 1 --",
        "SELECT name FROM t UNION SELECT password FROM secrets",
        "SELECT * FROM users WHERE id = 7",
    ],
)
def test_sql_removal_is_idempotent(query):
    pattern = SecurityPatternSet().get(SQL_INJECTION)
    once = sanitize_sql(query, pattern)
    assert sanitize_sql(once, pattern) == once
    assert not pattern.search(once)


def test_sql_sanitizer_clean():
    clean = SqlSanitizer(SecurityPatternSet()).clean
    assert clean(None) is None
    assert clean("DELETE FROM t WHERE id = 1; delete from t") == "DELETE FROM t WHERE id = 1 t"
    assert clean("SELECT 1") == "SELECT 1"


def test_escape_html_all_characters():
    assert escape_html("<a href='/x'>\"&`</a>") == (
        "&lt;a href=&#39;&#x2F;x&#39;&gt;&quot;&amp;&#x60;&lt;&#x2F;a&gt;"
    )
    escaper = HtmlEscaper(SecurityPatternSet())
    assert escaper.escape(None) is None
    assert escaper.clean_if_suspicious("<b>bold</b>") == "<b>bold</b>"
    assert escaper.clean_if_suspicious("<script>x</script>").startswith("&lt;script&gt;")


def test_pattern_set_swaps_whole_mapping():
    patterns = SecurityPatternSet()
    before = patterns.snapshot()

    assert patterns.replace(XSS, r"<b>") is True
    after = patterns.snapshot()

    assert before[XSS].search("<script>")
    assert not after[XSS].search("<script>")
    assert after[XSS].search("<b>")
    assert after[SQL_INJECTION] is before[SQL_INJECTION]


def test_invalid_pattern_keeps_previous():
    patterns = SecurityPatternSet()
    old = patterns.get(XSS)
    assert patterns.replace(XSS, "([unclosed") is False
    assert patterns.get(XSS) is old


def test_missing_patterns_file_yields_defaults(tmp_path):
    patterns = load_security_patterns(str(tmp_path / "nope.json"))
    assert set(patterns) == {SQL_INJECTION, XSS}
    assert all(patterns.values())


@pytest.mark.parametrize("content", ["{not json", "[]", '{"XSS": 5}'])
def test_malformed_patterns_file_yields_defaults(tmp_path, content):
    path = tmp_path / "security-patterns.json"
    path.write_text(content)
    assert set(load_security_patterns(str(path))) == {SQL_INJECTION, XSS}


def test_patterns_file_is_loaded(tmp_path):
    path = tmp_path / "security-patterns.json"
    path.write_text(json.dumps({"XSS": "<iframe"}))
    assert load_security_patterns(str(path)) == {"XSS": "<iframe"}


def test_deprecation_mappings_defaults_and_file(tmp_path):
    defaults = load_deprecation_mappings(str(tmp_path / "missing.json"))
    assert defaults == {k: dict(v) for k, v in DEFAULT_DEPRECATION_MAPPINGS.items()}
    assert len(list(iter_mappings(defaults))) == 3

    path = tmp_path / "deprecation-mappings.json"
    path.write_text(json.dumps({"app.old": {"add": "operator#add_exact", "rm": "shutil#rmtree"}}))
    loaded = load_deprecation_mappings(str(path))
    assert list(iter_mappings(loaded)) == [
        ("app.old", "add", "operator#add_exact"),
        ("app.old", "rm", "shutil#rmtree"),
    ]

    path.write_text(json.dumps({"app.old": ["not", "a", "mapping"]}))
    assert load_deprecation_mappings(str(path)) == defaults


def test_parse_target():
    assert parse_target("pathlib.Path#unlink_if_exists") == ("pathlib.Path", "unlink_if_exists")
    for bad in ("nohash", "#x", "x#", "a#b#c"):
        with pytest.raises(ValueError):
            parse_target(bad)


def test_add_exact_overflow():
    assert add_exact(2, 3) == 5
    assert add_exact(-(2**31), 0) == -(2**31)
    with pytest.raises(OverflowError):
        add_exact(2**31 - 1, 1)
    with pytest.raises(OverflowError):
        add_exact(-(2**31), -1)


def test_delete_if_exists(tmp_path):
    f = tmp_path / "x.txt"
    f.write_text("x")
    assert delete_if_exists(f) is True
    assert delete_if_exists(f) is False
    # A directory cannot be removed with os.remove; the shim reports False.
    assert delete_if_exists(tmp_path) is False


def test_url_encode():
    assert url_encode("a b&c=d/é") == "a+b%26c%3Dd%2F%C3%A9"
    assert url_encode(None) is None


def test_shim_registry():
    assert set(SUPPORTED_SHIMS) == {
        "operator#add_exact",
        "pathlib.Path#unlink_if_exists",
        "urllib.parse#quote_plus",
    }
    assert resolve_shim("operator#add_exact") is add_exact
    assert resolve_shim("shutil#rmtree") is None
