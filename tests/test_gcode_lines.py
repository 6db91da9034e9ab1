"""
Tests for program splitting, line cleaning and small utilities.
"""

import pytest

from plugin_sender.gcode_lines import clean_gcode_line, encode_line_payload, split_program
from plugin_sender.utils.exceptions import InvalidParameterError
from plugin_sender.utils.grbl_errors import describe_controller_fault, parse_controller_code
from plugin_sender.utils.validation import (
    parse_version,
    validate_interval,
    validate_tool_number,
    version_at_least,
)


class TestCleanLine:
    @pytest.mark.parametrize(
        "raw, cleaned",
        [
            ("G0 X1", "G0 X1"),
            ("  G0 X1  ", "G0 X1"),
            ("G0 X1 ; rapid", "G0 X1"),
            ("G0 (move) X1", "G0  X1"),
            ("(only a comment)", ""),
            ("; note", ""),
            ("%", ""),
            ("\ufeffG21", "G21"),
            ("", ""),
        ],
    )
    def test_clean(self, raw, cleaned):
        assert clean_gcode_line(raw) == cleaned


class TestSplitProgram:
    def test_line_endings(self):
        assert split_program("G21\r\nG0 X1\rG0 X2\n") == ["G21", "G0 X1", "G0 X2"]

    def test_blank_lines_kept(self):
        assert split_program("G21\n\nG0 X1") == ["G21", "", "G0 X1"]

    def test_empty(self):
        assert split_program("") == []

    def test_encode_payload(self):
        assert encode_line_payload("G0 X1") == b"G0 X1\n"
        with pytest.raises(UnicodeEncodeError):
            encode_line_payload("G0 X1 °")


class TestControllerCodes:
    def test_parse_error_code(self):
        info = parse_controller_code("error:20")
        assert info.kind == "error"
        assert info.code == 20
        assert info.description

    def test_parse_alarm_code(self):
        info = parse_controller_code("ALARM:9")
        assert info.kind == "alarm"
        assert "Homing" in info.description

    def test_no_code(self):
        assert parse_controller_code("ok") is None
        assert parse_controller_code(None) is None

    def test_describe_is_idempotent(self):
        once = describe_controller_fault("error:9")
        assert once.startswith("error:9 (")
        assert describe_controller_fault(once) == once

    def test_unknown_code_unchanged(self):
        assert describe_controller_fault("error:999") == "error:999"


class TestValidation:
    def test_interval(self):
        assert validate_interval(None) is None
        assert validate_interval("1.5") == 1.5
        with pytest.raises(InvalidParameterError):
            validate_interval(-1)

    def test_tool_number(self):
        assert validate_tool_number(None) is None
        assert validate_tool_number("3") == 3
        with pytest.raises(InvalidParameterError):
            validate_tool_number(-1)

    @pytest.mark.parametrize(
        "running, required, ok",
        [
            ("1.2", "1.0", True),
            ("1.2", "1.2.0", True),
            ("1.2", "1.10", False),
            ("1.2", None, True),
            ("v2.0.1-beta", "2.0", True),
        ],
    )
    def test_version_at_least(self, running, required, ok):
        assert version_at_least(running, required) is ok

    def test_parse_version_rejects_garbage(self):
        assert parse_version("1.0.0") == (1,)
        with pytest.raises(InvalidParameterError):
            parse_version("latest")
