from __future__ import annotations

import base64
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from sqlalchemy.orm import Session

from ..models import Run, StepRecord
from ..storage.base import StorageBackend
from .records import StepResult, StepStatus

# 1x1 transparent PNG used when the window can no longer be captured
BLANK_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)

PLACEHOLDER_SOURCE = "<!-- page source unavailable: {reason} -->\n"


def _safe_name(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", value).strip("_") or "step"


class CaptureManager:
    def __init__(self, db_session: Session, storage: StorageBackend) -> None:
        self.db_session = db_session
        self.storage = storage

    def start_run(self, source_file: str, total_steps: int) -> Run:
        run_key = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        run = Run(
            source_file=source_file,
            run_key=run_key,
            status="running",
            started_at=datetime.now(timezone.utc),
            total_steps=total_steps,
        )
        self.db_session.add(run)
        self.db_session.commit()
        self.db_session.refresh(run)
        return run

    async def capture_artifacts(
        self, step_id: str, page: Any, failed: bool = False
    ) -> Tuple[str, str]:
        """Save a screenshot and the page source; placeholders when the page is gone."""
        name = _safe_name(step_id) + ("_FAIL" if failed else "")
        screenshot_key = f"screenshots/{name}.png"
        source_key = f"page_sources/{name}_source.html"

        screenshot_bytes: Optional[bytes] = None
        source_html: Optional[str] = None
        reason = "no open window"
        if page is not None:
            try:
                if not page.is_closed():
                    screenshot_bytes = await page.screenshot(full_page=True)
                    source_html = await page.content()
            except Exception as exc:
                reason = str(exc).splitlines()[0] if str(exc) else exc.__class__.__name__
                logging.warning("capture_failed step=%s reason=%s", step_id, reason)

        screenshot_path = self.storage.save_bytes(screenshot_key, screenshot_bytes or BLANK_PNG)
        if source_html is None:
            source_html = PLACEHOLDER_SOURCE.format(reason=reason)
        source_path = self.storage.save_bytes(source_key, source_html.encode("utf-8"))
        return screenshot_path, source_path

    def record_step(self, run: Run, step_index: int, result: StepResult, url: Optional[str] = None) -> StepRecord:
        record = StepRecord(
            run_id=run.id,
            step_index=step_index,
            step_id=result.step,
            action=result.action,
            target=result.target,
            status=result.status.value,
            remarks=result.remarks,
            actual_output=result.actual_output,
            failure_class=result.failure_class,
            screenshot_key=result.screenshot,
            source_key=result.page_source,
            url=url,
        )
        self.db_session.add(record)
        if result.status == StepStatus.PASS:
            run.passed = (run.passed or 0) + 1
        elif result.status == StepStatus.FAIL:
            run.failed = (run.failed or 0) + 1
        elif result.status == StepStatus.SKIPPED:
            run.skipped = (run.skipped or 0) + 1
        self.db_session.add(run)
        self.db_session.commit()
        return record

    def finish_run(self, run: Run, status: str, reason: Optional[str] = None) -> None:
        run.status = status
        run.status_reason = reason
        run.stop_requested = status == "stopped"
        run.finished_at = datetime.now(timezone.utc)
        self.db_session.add(run)
        self.db_session.commit()
