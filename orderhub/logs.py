import json
import logging

from orderhub.tracing import current_trace_id


def _json_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


request_logger = _json_logger("orderhub.request")
audit_logger = _json_logger("orderhub.audit")


def log_event(payload: dict) -> None:
    payload.setdefault("trace_id", current_trace_id())
    request_logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))


def audit_event(payload: dict) -> None:
    payload.setdefault("trace_id", current_trace_id())
    audit_logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))
