from __future__ import annotations

import allure
import pytest

from pi_daemon.engine.errors import WorkflowConfigError
from pi_daemon.engine.simple_toml import parse_simple_toml

pytestmark = [
    allure.epic("Workflows"),
    allure.feature("Definition Parsing"),
]


def test_parses_sections_and_scalar_types() -> None:
    parsed = parse_simple_toml(
        """
# comment
top = "level"

[workflow]
name = "daily-digest"
type = 'script'

[trigger]
debounce_ms = 2_500
startup = true
manual = false

[timeout]
minutes = 1.5
""",
    )

    assert parsed[""] == {"top": "level"}
    assert parsed["workflow"] == {"name": "daily-digest", "type": "script"}
    assert parsed["trigger"] == {"debounce_ms": 2500, "startup": True, "manual": False}
    assert parsed["timeout"] == {"minutes": 1.5}


def test_basic_strings_keep_hashes_and_unescape() -> None:
    parsed = parse_simple_toml('[agent]\nprompt = "Tag #1:\\t\\"quoted\\"" # trailing\n')

    assert parsed["agent"]["prompt"] == 'Tag #1:\t"quoted"'


def test_unquoted_values_drop_trailing_comment() -> None:
    parsed = parse_simple_toml("[retry]\nmax_attempts = 4 # four tries\nmode = fast # bare\n")

    assert parsed["retry"] == {"max_attempts": 4, "mode": "fast"}


def test_triple_quoted_prompt_spans_lines() -> None:
    parsed = parse_simple_toml(
        '[agent]\nprompt = """\nSummarize today.\n\nKeep it short.\n"""\nmodel = "fast"\n',
    )

    assert parsed["agent"]["prompt"] == "Summarize today.\n\nKeep it short.\n"
    assert parsed["agent"]["model"] == "fast"


def test_single_line_triple_quoted_value() -> None:
    parsed = parse_simple_toml("[agent]\nprompt = '''one line'''\n")

    assert parsed["agent"]["prompt"] == "one line"


def test_unterminated_strings_raise_config_error() -> None:
    with pytest.raises(WorkflowConfigError, match="prompt"):
        parse_simple_toml('[agent]\nprompt = """never closed\n')
    with pytest.raises(WorkflowConfigError, match="name"):
        parse_simple_toml('[workflow]\nname = "open\n')


def test_unrecognized_lines_are_ignored() -> None:
    parsed = parse_simple_toml("[models]\nthis is not toml\nfast = \"claude-haiku-4-5\"\n")

    assert parsed["models"] == {"fast": "claude-haiku-4-5"}
