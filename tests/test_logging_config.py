import json
import logging

from cardex.logging_config import StructuredFormatter, configure_logging


def _record(msg="Card %s saved", args=("abc",), **extra):
    record = logging.LogRecord("cardex.test", logging.INFO, __file__, 12, msg, args, None, func="save")
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_one_json_object():
    line = StructuredFormatter().format(_record())

    data = json.loads(line)
    assert data["level"] == "INFO"
    assert data["logger"] == "cardex.test"
    assert data["message"] == "Card abc saved"
    assert data["function"] == "save"


def test_formatter_keeps_simple_extra_fields():
    data = json.loads(StructuredFormatter().format(_record(card_id="abc", size=1024, handle=object())))

    assert data["card_id"] == "abc"
    assert data["size"] == 1024
    assert "handle" not in data


def test_configure_logging_installs_a_single_handler():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        configure_logging("debug")
        configure_logging("warning")

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)
        assert root.level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
