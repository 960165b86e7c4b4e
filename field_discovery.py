"""
Dynamic field discovery

Some controls on the quote form get generated ids depending on earlier
answers (profession, vehicle owner, SF classes, start date, ...). These are
found by scanning every visible input/select and matching keywords against a
lowercase context string built from the control's attributes and label.
"""
import logging
import re
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from playwright.async_api import Error as PlaywrightError, Page

from form_engine import OPTIONS_SCRIPT, FieldLocator
from quote_models import DiscoveredCandidate, FieldKind

logger = logging.getLogger(__name__)


DISCOVERABLE_CONTROLS = "input, select"

DESCRIBE_CONTROL_SCRIPT = '''
    (el) => {
        let label = null;
        if (el.id) {
            label = document.querySelector('label[for="' + CSS.escape(el.id) + '"]');
        }
        if (!label) {
            label = el.closest('label');
        }
        return {
            tag: el.tagName.toLowerCase(),
            type: (el.getAttribute('type') || '').toLowerCase(),
            id: el.id || '',
            name: el.getAttribute('name') || '',
            value: el.value || '',
            className: typeof el.className === 'string' ? el.className : '',
            placeholder: el.getAttribute('placeholder') || '',
            labelText: label ? label.textContent.trim() : ''
        };
    }
'''

TEXT_INPUT_TYPES = {"", "text", "tel", "number", "search"}
SIMPLE_ID = re.compile(r"^[A-Za-z][\w-]*$")


def control_kind(info: Dict[str, str]) -> Optional[FieldKind]:
    """Map tag/type of a scanned control to a FieldKind, None if not fillable"""
    if info.get("tag") == "select":
        return FieldKind.SELECT
    if info.get("tag") != "input":
        return None

    input_type = info.get("type", "")
    if input_type == "radio":
        return FieldKind.RADIO
    if input_type == "checkbox":
        return FieldKind.CHECKBOX
    if input_type == "date":
        return FieldKind.DATE
    if input_type in TEXT_INPUT_TYPES:
        return FieldKind.TEXT
    return None


def build_context(info: Dict[str, str], kind: FieldKind) -> str:
    """
    Lowercase text a control is matched against.

    Choice controls are described by name, value and label; free-text
    controls by name, id, placeholder, class and label.
    """
    if kind in (FieldKind.RADIO, FieldKind.CHECKBOX):
        parts = [info.get("name"), info.get("value"), info.get("labelText")]
    else:
        parts = [
            info.get("name"),
            info.get("id"),
            info.get("placeholder"),
            info.get("className"),
            info.get("labelText"),
        ]
    return " ".join(p for p in parts if p).lower()


def match_keywords(context: str, keywords: Iterable[str]) -> tuple:
    return tuple(k for k in keywords if k.lower() in context)


def selector_for(info: Dict[str, str]) -> str:
    """Rebuild a selector for logging and diagnostics"""
    element_id = info.get("id")
    if element_id:
        if SIMPLE_ID.match(element_id):
            return f"#{element_id}"
        return f'[id="{element_id}"]'
    tag = info.get("tag") or "input"
    if info.get("type") in ("radio", "checkbox"):
        return f'{tag}[name="{info.get("name", "")}"][value="{info.get("value", "")}"]'
    return f'{tag}[name="{info.get("name", "")}"]'


class FieldDiscoverer:
    """Scans the current DOM for controls whose context matches keywords"""

    def __init__(self, page: Page, locator: Optional[FieldLocator] = None):
        self.page = page
        self.locator = locator or FieldLocator(page)

    async def discover(
        self,
        keywords: Sequence[str],
        kinds: Sequence[FieldKind] = (FieldKind.TEXT, FieldKind.DATE, FieldKind.SELECT),
        exclude: Sequence[str] = (),
    ) -> List[DiscoveredCandidate]:
        """
        Args:
            keywords: any of these contained in the context keeps a control
            kinds: control kinds to consider
            exclude: any of these contained in the context drops a control

        Returns:
            Candidates in document order; only valid for the current DOM
        """
        try:
            handles = await self.page.query_selector_all(DISCOVERABLE_CONTROLS)
        except PlaywrightError as e:
            logger.warning(f"Discovery scan failed: {e}")
            return []

        candidates = []
        for handle in handles:
            if not await self.locator.is_visible(handle):
                continue

            try:
                info = await handle.evaluate(DESCRIBE_CONTROL_SCRIPT)
            except PlaywrightError as e:
                logger.debug(f"Could not describe control: {e}")
                continue

            kind = control_kind(info)
            if kind is None or kind not in kinds:
                continue

            context = build_context(info, kind)
            matched = match_keywords(context, keywords)
            if not matched or match_keywords(context, exclude):
                continue

            candidates.append(DiscoveredCandidate(
                handle=handle,
                selector=selector_for(info),
                kind=kind,
                context=context,
                label_text=info.get("labelText", ""),
                value=info.get("value", ""),
                matched=matched,
            ))

        logger.info(f"Discovered {len(candidates)} candidates for keywords {list(keywords)}")
        for index, candidate in enumerate(candidates, 1):
            logger.debug(f"   {index}. {candidate.selector} ({candidate.kind.value}): {candidate.context}")
        return candidates

    async def read_options(self, candidate: DiscoveredCandidate) -> List[Dict[str, str]]:
        try:
            return await candidate.handle.evaluate(OPTIONS_SCRIPT)
        except PlaywrightError as e:
            logger.debug(f"Could not read options of {candidate.selector}: {e}")
            return []

    async def find_option(self, candidate: DiscoveredCandidate,
                          predicate: Callable[[Dict[str, str]], bool]) -> Optional[Dict[str, str]]:
        """First option of a discovered select for which predicate holds"""
        for option in await self.read_options(candidate):
            if predicate(option):
                return option
        return None


def option_text_contains(*words: str) -> Callable[[Dict[str, str]], bool]:
    def predicate(option: Dict[str, str]) -> bool:
        text = option.get("text", "").lower()
        return any(word in text for word in words)
    return predicate


def sf_class_option(sf_class: str) -> Callable[[Dict[str, str]], bool]:
    """Matches 'SF 2' style option text, or an option value ending in the class number"""
    number = sf_class.replace("SF", "").strip()
    # "SF 2" must not match "SF 20"
    text_pattern = re.compile(rf"{re.escape(sf_class)}(?!\d)") if sf_class else None

    def predicate(option: Dict[str, str]) -> bool:
        text = option.get("text", "")
        if text_pattern and text_pattern.search(text):
            return True
        value = option.get("value", "")
        return bool(number) and re.search(rf"(^|\D){re.escape(number)}$", value) is not None
    return predicate
