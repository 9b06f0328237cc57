"""
Logging helpers for sync components.

Records logged on behalf of an open document carry its ``file_id``,
``session_id`` and current ``version`` as record attributes, so the
host's handlers and formatters can filter on or render them.
"""

import logging
from collections.abc import Callable, Mapping
from typing import Any

ContextProvider = Callable[[], Mapping[str, Any]]


class SyncLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter reading the document context when a record is logged.

    The context comes from a provider rather than a fixed mapping, so the
    version attached to a record is the one current at that moment.
    Unknown (None) fields are left out; ``extra`` given at the call site
    takes precedence over the context.
    """

    def __init__(self, logger: logging.Logger, context: ContextProvider | None = None) -> None:
        super().__init__(logger, {})
        self._context = context

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        fields = {}
        if self._context is not None:
            fields = {key: value for key, value in self._context().items() if value is not None}
        fields.update(kwargs.get("extra") or {})
        kwargs["extra"] = fields
        return msg, kwargs
