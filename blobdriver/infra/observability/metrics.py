from __future__ import annotations

from typing import Any, Callable

from prometheus_client import Counter, make_wsgi_app

from blobdriver.common.config import Settings, get_settings

# Part counts and bytes are unlabelled: keys would make the series unbounded.
PARTS_UPLOADED = Counter(
    "storage_parts_uploaded_total",
    "Multipart upload parts flushed by writers",
)

PART_BYTES = Counter(
    "storage_part_bytes_total",
    "Bytes uploaded through multipart upload parts",
)

SESSION_REPAIRS = Counter(
    "storage_session_repairs_total",
    "Resumed uploads restarted because their last part was undersized",
    ["mode"],
)

WRITERS_FINISHED = Counter(
    "storage_writer_finished_total",
    "Writers that reached a terminal state",
    ["outcome"],
)

# /metrics WSGI app, for embedding in the registry process
metrics_app = make_wsgi_app()


def metrics_wsgi_app(settings: Settings | None = None) -> Callable[..., Any] | None:
    """Return the /metrics app to mount, or None when metrics are disabled."""
    settings = settings or get_settings()
    if not settings.ENABLE_METRICS:
        return None
    return metrics_app
