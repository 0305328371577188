"""Structured JSON logging through python-json-logger.

Every record carries four correlation fields read from context variables:

- `trace_id`: the HTTP `x-correlation-id` header, or the QStash message id
  for job callbacks; set by the gateway per request.
- `claim_id`: set by intake when a claim is accepted and by recovery when a
  retry starts.
- `batch_id`: a short random id set by the batch trigger for each batch run.
- `source`: the claim source (`web`, `mini_app`); set by intake and by the
  batch trigger.

Tasks copy the current context when created, so a batch started from a
claim request logs under that request's trace id.
"""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from rewardpay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
claim_id_ctx: ContextVar[str] = ContextVar("claim_id", default="")
batch_id_ctx: ContextVar[str] = ContextVar("batch_id", default="")
source_ctx: ContextVar[str] = ContextVar("source", default="")


class ContextFilter(logging.Filter):
    """Copy `service_name` and the four correlation context variables onto each record.

    Attached to both the handler and the root logger so third-party loggers
    (uvicorn, httpx, web3) get the same fields.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.claim_id = claim_id_ctx.get()
        record.batch_id = batch_id_ctx.get()
        record.source = source_ctx.get()
        return True


def configure_logging() -> None:
    """Configure root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(claim_id)s %(batch_id)s %(source)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)


logger = logging.getLogger("rewardpay")
