"""Playwright-backed fetch collaborator that visits configured pages in order."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager
from pathlib import Path
import re
from typing import Any, Protocol
from urllib.parse import urlparse

from scrape_gate.config import FetchConfig
from scrape_gate.errors import FetchError
from scrape_gate.fetch.policy import classify_navigation, install_resource_routing
from scrape_gate.fetch.session import PlaywrightBrowserSession
from scrape_gate.logging import get_logger
from scrape_gate.models import StepOutcome, StepResult

logger = get_logger(__name__)

_SLUG_RE = re.compile(r"[^a-z0-9]+")


class PageSession(Protocol):
    def new_page(self) -> Any:
        """Create and return a page-like object."""


SessionFactory = Callable[[FetchConfig], AbstractContextManager[PageSession]]


class PlaywrightPageSequence:
    """Load each configured URL once per run and classify the response.

    One browser context is shared across all pages so cookies carry over like
    a real visitor. The orchestrator paces the steps; this class never sleeps.
    """

    def __init__(
        self,
        config: FetchConfig,
        *,
        session_factory: SessionFactory | None = None,
    ) -> None:
        if not config.urls:
            raise FetchError(
                "No fetch targets configured. Set [fetch] base_url and paths in the config file."
            )
        self.config = config
        self._session_factory = session_factory or PlaywrightBrowserSession

    def perform_run(self) -> Iterator[StepResult]:
        with self._session_factory(self.config) as session:
            page = session.new_page()
            install_resource_routing(page, block_resources=self.config.block_resources)
            for index, url in enumerate(self.config.urls, start=1):
                yield self._fetch_page(page, url, index=index)

    def _fetch_page(self, page: Any, url: str, *, index: int) -> StepResult:
        try:
            response = page.goto(url, wait_until="domcontentloaded")
        except Exception as exc:
            logger.debug("page navigation failed url=%s error=%s", url, exc)
            return StepResult(name=url, outcome=StepOutcome.FAILED, detail=f"navigation_error: {exc}")

        status_code = _response_status(response)
        body_text = _read_body_text(page)
        verdict = classify_navigation(
            status_code=status_code,
            current_url=str(getattr(page, "url", url)),
            page_title=_read_title(page),
            body_text=body_text,
        )
        if verdict.outcome is not StepOutcome.SUCCESS or not self.config.snapshot_dir:
            return StepResult(
                name=url,
                outcome=verdict.outcome,
                detail=verdict.reason,
                status_code=status_code,
                payload_bytes=len(body_text.encode("utf-8")),
            )

        try:
            written = self._write_snapshot(page, url, index=index)
        except (OSError, FetchError) as exc:
            logger.warning("page snapshot failed url=%s error=%s", url, exc)
            return StepResult(
                name=url,
                outcome=StepOutcome.PARTIAL,
                detail=f"snapshot_failed: {exc}",
                status_code=status_code,
            )
        return StepResult(
            name=url,
            outcome=StepOutcome.SUCCESS,
            detail=verdict.reason,
            status_code=status_code,
            payload_bytes=written,
        )

    def _write_snapshot(self, page: Any, url: str, *, index: int) -> int:
        try:
            html = str(page.content())
        except Exception as exc:
            raise FetchError(f"Could not read page content: {exc}") from exc

        snapshot_dir = Path(str(self.config.snapshot_dir)).expanduser()
        snapshot_dir.mkdir(parents=True, exist_ok=True)
        target = snapshot_dir / f"{index:02d}-{snapshot_slug(url)}.html"
        temp_path = target.with_name(f"{target.name}.tmp")
        data = html.encode("utf-8")
        try:
            temp_path.write_bytes(data)
            temp_path.replace(target)
        finally:
            try:
                if temp_path.exists():
                    temp_path.unlink()
            except OSError:
                pass
        return len(data)


def snapshot_slug(url: str) -> str:
    path = urlparse(url).path.lower()
    slug = _SLUG_RE.sub("-", path).strip("-")
    return slug or "index"


def _response_status(response: Any) -> int | None:
    if response is None:
        return None
    status = getattr(response, "status", None)
    if isinstance(status, int) and not isinstance(status, bool):
        return status
    return None


def _read_title(page: Any) -> str:
    try:
        return str(page.title())
    except Exception:
        return ""


def _read_body_text(page: Any) -> str:
    try:
        body_text = page.inner_text("body", timeout=2_000)
    except Exception:
        return ""
    return str(body_text)
