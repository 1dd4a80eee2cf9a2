"""Per-flow log switches.

Ingestion modules tag their progress lines with ``extra={"flow": UPLOAD}`` or
``extra={"flow": SUBMISSION}``. ``FlowLogFilter`` drops a tagged record when
``FLOW_LOGS_ENABLED`` or the matching category switch is off; untagged
records (warnings, errors) always pass.
"""

from __future__ import annotations

import logging

from caseflow.core.config import settings

UPLOAD = "upload"
SUBMISSION = "submission"


class FlowLogFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        flow = getattr(record, "flow", None)
        if flow is None:
            return True
        if not settings.FLOW_LOGS_ENABLED:
            return False
        if flow == UPLOAD:
            return bool(settings.FLOW_LOGS_UPLOAD_ENABLED)
        if flow == SUBMISSION:
            return bool(settings.FLOW_LOGS_SUBMISSION_ENABLED)
        return True


def flow_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not any(isinstance(existing, FlowLogFilter) for existing in logger.filters):
        logger.addFilter(FlowLogFilter())
    return logger
