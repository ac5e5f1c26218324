"""
Failure diagnostics for supplier pages.

Third-party login and checkout pages change without notice, so every
unexplained failure carries a snapshot of what the page looked like.
Capturing must never replace the error being reported.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from KitchenCart.exceptions import ScrapingError, SupplierError

logger = logging.getLogger(__name__)

DEFAULT_ERROR_SELECTORS = (
    ".error, .error-message, .alert-danger, .alert-error, .invalid-feedback, "
    ".form-error, [role='alert'], [data-testid*='error']"
)

PAGE_SCAN_JS = """
() => {
    const visible = (el) => {
        const s = window.getComputedStyle(el);
        const r = el.getBoundingClientRect();
        return s.display !== 'none' && s.visibility !== 'hidden' && r.width > 0 && r.height > 0;
    };
    const text = (el) => (el.innerText || '').trim().slice(0, 300);
    const live = Array.from(document.querySelectorAll("[aria-live], [role='alert'], [role='status']"))
        .map(text).filter(Boolean);
    const styled = Array.from(document.querySelectorAll('body *'))
        .filter(el => el.children.length === 0 && visible(el))
        .filter(el => {
            const c = window.getComputedStyle(el).color;
            return /rgb\\((2[0-9]{2}|1[5-9][0-9]), ?([0-9]{1,2}), ?([0-9]{1,2})\\)/.test(c);
        })
        .map(text).filter(Boolean).slice(0, 20);
    const controls = Array.from(document.querySelectorAll('input, select, textarea, button'))
        .filter(visible)
        .slice(0, 40)
        .map(el => ({
            tag: el.tagName.toLowerCase(),
            type: el.getAttribute('type'),
            name: el.getAttribute('name'),
            id: el.id || null,
            placeholder: el.getAttribute('placeholder'),
            text: el.tagName === 'BUTTON' ? text(el) : null,
        }));
    return { live_regions: live.concat(styled), form_controls: controls };
}
"""


@dataclass
class DiagnosticBundle:
    url: Optional[str] = None
    title: Optional[str] = None
    error_messages: List[str] = field(default_factory=list)
    live_regions: List[str] = field(default_factory=list)
    form_controls: List[Dict[str, Any]] = field(default_factory=list)
    body_excerpt: Optional[str] = None
    capture_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def summary(self) -> str:
        parts = [f"url={self.url}", f"title={self.title!r}"]
        if self.error_messages:
            parts.append(f"errors={self.error_messages[:3]}")
        return ", ".join(parts)


async def capture_diagnostics(browser, error_selectors: str = DEFAULT_ERROR_SELECTORS,
                              excerpt_length: int = 1500) -> DiagnosticBundle:
    """Snapshot the current page. Each step is independent; failures are noted, not raised."""
    bundle = DiagnosticBundle()

    try:
        bundle.url = browser.current_url
        bundle.title = await browser.title()
    except Exception as e:
        bundle.capture_errors.append(f"location: {e}")

    try:
        bundle.error_messages = await browser.texts_of(error_selectors)
    except Exception as e:
        bundle.capture_errors.append(f"error_messages: {e}")

    try:
        scan = await browser.evaluate(PAGE_SCAN_JS) or {}
        bundle.live_regions = list(scan.get("live_regions") or [])
        bundle.form_controls = list(scan.get("form_controls") or [])
    except Exception as e:
        bundle.capture_errors.append(f"page_scan: {e}")

    try:
        bundle.body_excerpt = await browser.body_text(excerpt_length)
    except Exception as e:
        bundle.capture_errors.append(f"body: {e}")

    if bundle.capture_errors:
        logger.warning(f"Partial diagnostics captured: {bundle.capture_errors}")
    return bundle


def wrap_unexpected(exc: Exception, bundle: Optional[DiagnosticBundle],
                    supplier_name: Optional[str] = None) -> SupplierError:
    """Return a taxonomy error for exc, attaching the bundle when it has none yet."""
    if isinstance(exc, SupplierError):
        if bundle is not None and exc.diagnostics is None:
            exc.attach_diagnostics(bundle.to_dict())
        return exc

    wrapped = ScrapingError(f"Unexpected {type(exc).__name__}: {exc}", supplier_name=supplier_name)
    if bundle is not None:
        wrapped.attach_diagnostics(bundle.to_dict())
    return wrapped
