import pytest

from layerbuild.exceptions import ContextError, IgnoreRuleError
from layerbuild.utils.patterns import is_ignored, normalize_rule, normalize_rules, select_paths

PATHS = ["README", "a.txt", "src/main.c", "src/util/x.c", "web/node_modules/y.js"]


class TestNormalizeRule:
    """Tests for ignore rule validation and normalization."""

    @pytest.mark.parametrize("raw, expected", [
        ("*.log", "*.log"),
        ("  *.log  ", "*.log"),
        ("./build/", "build/"),
        ("/dist", "dist"),
        ("docs\\*.md", "docs/*.md"),
        ("**/node_modules", "**/node_modules"),
    ])
    def test_normalizes_valid_rules(self, raw, expected):
        """Leading './' and '/' are stripped, a trailing '/' is kept."""
        assert normalize_rule(raw) == expected

    @pytest.mark.parametrize("raw", ["", "   ", "!keep.txt", "../secret", "a/../b", "[abc", "/"])
    def test_malformed_rules_raise(self, raw):
        """Malformed rules raise IgnoreRuleError, which is a ContextError."""
        with pytest.raises(IgnoreRuleError):
            normalize_rule(raw)
        assert issubclass(IgnoreRuleError, ContextError)

    def test_normalize_rules_drops_duplicates_in_order(self):
        assert normalize_rules(["b", "./a", "a", "/b"]) == ("b", "a")


class TestIsIgnored:
    """Tests for matching paths against ignore rules."""

    @pytest.mark.parametrize("path, rules, is_dir, expected", [
        ("app.log", ["*.log"], False, True),
        ("app.txt", ["*.log"], False, False),
        ("logs/today.txt", ["logs"], False, True),
        ("build", ["build/"], True, True),
        ("build", ["build/"], False, False),
        ("build/out.o", ["build/"], False, True),
        ("node_modules/x.js", ["**/node_modules"], False, True),
        ("web/node_modules/y.js", ["**/node_modules"], False, True),
        ("src/main.c", [], False, False),
    ])
    def test_rules(self, path, rules, is_dir, expected):
        assert is_ignored(path, rules, is_dir=is_dir) is expected


class TestSelectPaths:
    """Tests for COPY/RUN source pattern selection."""

    @pytest.mark.parametrize("patterns, expected", [
        (["src"], ["src/main.c", "src/util/x.c"]),
        (["./src/"], ["src/main.c", "src/util/x.c"]),
        (["src/main.c"], ["src/main.c"]),
        (["*.txt"], ["a.txt"]),
        (["README", "a.txt"], ["README", "a.txt"]),
        (["missing"], []),
    ])
    def test_selection(self, patterns, expected):
        assert select_paths(PATHS, patterns) == expected

    @pytest.mark.parametrize("pattern", [".", "/", "./", "**"])
    def test_whole_context_patterns(self, pattern):
        assert select_paths(PATHS, [pattern]) == PATHS

    def test_keeps_input_order(self):
        """Selection order follows the paths, not the patterns."""
        assert select_paths(PATHS, ["src/util", "README"]) == ["README", "src/util/x.c"]
