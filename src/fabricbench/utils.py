from __future__ import annotations

import uuid
from datetime import UTC, datetime
from urllib.parse import quote

from .errors import ValidationError


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_run_id() -> str:
    return uuid.uuid4().hex


def config_path_segment(config_id: str) -> str:
    if not config_id or config_id.strip() != config_id:
        raise ValidationError(f"invalid config name: {config_id!r}")
    return quote(config_id, safe="")
