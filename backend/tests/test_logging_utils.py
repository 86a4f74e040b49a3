from __future__ import annotations

import logging

from transit_matrix.logging_utils import get_logger, log_event, set_console_level


class _Collect(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


def test_log_event_prefixes_fields_that_clash_with_record_attributes() -> None:
    logger = get_logger()
    collect = _Collect()
    logger.addHandler(collect)
    try:
        log_event("seeded", created=12, name="helsinki", level=logging.WARNING)
    finally:
        logger.removeHandler(collect)

    record = collect.records[-1]
    assert record.levelno == logging.WARNING
    assert record.event == "seeded"  # type: ignore[attr-defined]
    assert record.field_created == 12  # type: ignore[attr-defined]
    assert record.field_name == "helsinki"  # type: ignore[attr-defined]
    assert record.name == "transit_matrix"


def test_console_level_only_touches_the_console_handler() -> None:
    logger = get_logger()
    set_console_level(logging.WARNING)
    try:
        levels = {h.get_name(): h.level for h in logger.handlers}
        assert levels["console"] == logging.WARNING
        assert all(level == logging.NOTSET for name, level in levels.items() if name != "console")
    finally:
        set_console_level(logging.NOTSET)
