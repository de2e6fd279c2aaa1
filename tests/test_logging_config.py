from __future__ import annotations

import logging

from logging_config import ContextAdapter, ContextualFormatter, get_logger


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("services.historical", logging.INFO, __file__, 1, "tier failed", None, None)
    record.__dict__.update(extra)
    return record


def test_formatter_appends_known_context_in_order() -> None:
    formatter = ContextualFormatter(fmt="%(message)s")

    line = formatter.format(
        _record(reason="empty", tier="events", dataset_id="annual-2019", elapsed_ms=12.345, ignored=1)
    )

    assert line == "tier failed | dataset_id=annual-2019 tier=events elapsed_ms=12.3 reason=empty"


def test_formatter_without_context_leaves_message() -> None:
    formatter = ContextualFormatter(fmt="%(message)s")

    assert formatter.format(_record(tier=None)) == "tier failed"


def test_adapter_merges_bound_and_call_context(caplog) -> None:
    log = get_logger("tests.adapter", tier="pedestrian")

    with caplog.at_level(logging.INFO, logger="tests.adapter"):
        log.info("detect", extra={"dataset_id": "ped-counts"})
        log.info("override", extra={"tier": "synthetic"})

    first, second = caplog.records
    assert (first.tier, first.dataset_id) == ("pedestrian", "ped-counts")
    assert second.tier == "synthetic"


def test_service_modules_share_contextual_loggers() -> None:
    from services import events, historical, pipeline
    from upstream import fields, opendata

    for module in (events, historical, pipeline, fields, opendata):
        assert isinstance(module.logger, ContextAdapter), module.__name__
