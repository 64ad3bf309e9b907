from __future__ import annotations

import logging

from transit_od_tools.utils.logging_helper import setup_logging


def test_setup_logging_writes_log_file(tmp_path) -> None:
    log_file = tmp_path / "logs" / "od_batch_router.log"

    setup_logging(log_file=log_file)
    logging.info("Processing iteration: %d of %d", 100, 5000)
    root = logging.getLogger()
    for handler in list(root.handlers):
        handler.flush()
        if isinstance(handler, logging.FileHandler):
            handler.close()
            root.removeHandler(handler)

    text = log_file.read_text(encoding="utf-8")
    assert "INFO Processing iteration: 100 of 5000" in text
