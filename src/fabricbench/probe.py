from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from .app_logging import log_with_fields
from .backend import TestBackend
from .errors import ValidationError, WorkflowAborted
from .models import ProbeSnapshot

DEFAULT_INTERVAL_SECONDS = 2.0
# 300 attempts x 2 s: the probe gives up after 600 seconds.
DEFAULT_MAX_ATTEMPTS = 300

SnapshotCallback = Callable[[ProbeSnapshot, int], None]


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise WorkflowAborted("aborted")

    def wait(self, seconds: float) -> bool:
        return self._event.wait(seconds)


class ProbeCoordinator:
    def __init__(self, backend: TestBackend, logger: logging.Logger) -> None:
        self.backend = backend
        self.logger = logger

    def poll(
        self,
        config_id: str,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        *,
        on_snapshot: SnapshotCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> tuple[ProbeSnapshot, bool]:
        if max_attempts < 1:
            raise ValidationError(f"max_attempts must be >= 1, got {max_attempts}")
        if interval < 0:
            raise ValidationError(f"interval must be >= 0, got {interval}")
        token = cancel or CancelToken()

        attempt = 0
        while True:
            token.raise_if_cancelled()
            attempt += 1
            snapshot = self.backend.probe(config_id)
            log_with_fields(
                self.logger,
                logging.INFO,
                "probe_snapshot",
                config_id=config_id,
                attempt=attempt,
                running_hosts=snapshot.running_hosts,
                completed_hosts=snapshot.completed_hosts,
                error_hosts=snapshot.error_hosts,
                all_completed=snapshot.all_completed,
            )
            if on_snapshot is not None:
                on_snapshot(snapshot, attempt)
            if snapshot.all_completed:
                return snapshot, True
            if attempt >= max_attempts:
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "probe_timeout",
                    config_id=config_id,
                    attempts=attempt,
                    max_wait_seconds=interval * max_attempts,
                )
                return snapshot, False
            if token.wait(interval):
                raise WorkflowAborted("aborted")
