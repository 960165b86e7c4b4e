"""
Form interaction engine

FieldLocator finds the visible control for a field, StabilizationWaiter
waits out loaders and re-renders, VerifiedFieldWriter writes a value and
reads it back before reporting success.
"""
import asyncio
import logging
from typing import Iterable, Optional

from playwright.async_api import ElementHandle, Error as PlaywrightError, Page

from config import (
    STABILIZATION_TIMEOUT,
    SETTLE_TIME_SCALE,
    TYPE_DELAY_MS,
    WAIT_FIELD,
    WAIT_SHORT,
)
from quote_models import (
    DiscoveredStrategy,
    FieldDescriptor,
    FieldKind,
    FillOutcome,
    LocateStrategy,
    SelectorStrategy,
)

logger = logging.getLogger(__name__)


# True once no loader/spinner element is rendered with a size
LOADERS_SETTLED_SCRIPT = '''
    () => {
        const loaders = document.querySelectorAll('[class*="loading"], [class*="spinner"], [class*="wait"]');
        return loaders.length === 0 || Array.from(loaders).every(loader =>
            loader.offsetWidth === 0 || loader.offsetHeight === 0
        );
    }
'''

CLEAR_VALUE_SCRIPT = '''
    (el) => {
        el.value = '';
        el.dispatchEvent(new Event('focus', { bubbles: true }));
    }
'''

# Blur and fire change/input so reactive frameworks pick up the typed value
NOTIFY_CHANGE_SCRIPT = '''
    (el) => {
        el.blur();
        el.dispatchEvent(new Event('change', { bubbles: true }));
        el.dispatchEvent(new Event('input', { bubbles: true }));
    }
'''

SELECT_STATE_SCRIPT = '''
    (el) => {
        const option = el.selectedOptions && el.selectedOptions[0];
        return {
            tag: el.tagName.toLowerCase(),
            value: el.value,
            text: option ? option.textContent.trim() : ''
        };
    }
'''

OPTIONS_SCRIPT = '''
    (el) => Array.from(el.options || []).map(opt => ({
        value: opt.value,
        text: opt.textContent.trim()
    }))
'''


class StabilizationWaiter:
    """Waits for transient UI activity to settle. Never raises."""

    def __init__(self, page: Page, time_scale: Optional[float] = None, timeout: int = STABILIZATION_TIMEOUT):
        self.page = page
        self.time_scale = SETTLE_TIME_SCALE if time_scale is None else time_scale
        self.timeout = timeout

    async def settle(self, min_ms: int = WAIT_FIELD) -> None:
        await asyncio.sleep(min_ms * self.time_scale / 1000)

        try:
            await self.page.wait_for_function(LOADERS_SETTLED_SCRIPT, timeout=self.timeout)
        except PlaywrightError as e:
            # Loaders still visible after the timeout; carry on regardless
            logger.debug(f"Stabilization wait ended without settling: {e}")


class FieldLocator:
    """Resolves locate strategies to the first visible element"""

    def __init__(self, page: Page):
        self.page = page

    @staticmethod
    async def is_visible(handle: ElementHandle) -> bool:
        try:
            box = await handle.bounding_box()
        except PlaywrightError as e:
            logger.debug(f"Visibility check failed (detached element?): {e}")
            return False
        return bool(box) and box["width"] > 0 and box["height"] > 0

    async def resolve(self, strategy: LocateStrategy) -> Optional[ElementHandle]:
        if isinstance(strategy, DiscoveredStrategy):
            handle = strategy.candidate.handle
        elif isinstance(strategy, SelectorStrategy):
            try:
                handle = await self.page.query_selector(strategy.selector)
            except PlaywrightError as e:
                logger.debug(f"Selector {strategy.selector} failed: {e}")
                return None
        else:
            raise TypeError(f"Unknown locate strategy: {strategy!r}")

        if handle and await self.is_visible(handle):
            return handle
        return None

    async def locate(self, strategies: Iterable[LocateStrategy]) -> Optional[ElementHandle]:
        for strategy in strategies:
            handle = await self.resolve(strategy)
            if handle:
                return handle
        return None


class VerifiedFieldWriter:
    """
    Writes values into located controls and confirms each write by reading
    the control back. A mismatch is never reported as success.
    """

    def __init__(self, page: Page, waiter: StabilizationWaiter, locator: Optional[FieldLocator] = None,
                 type_delay: int = TYPE_DELAY_MS):
        self.page = page
        self.waiter = waiter
        self.locator = locator or FieldLocator(page)
        self.type_delay = type_delay

    async def write(self, descriptor: FieldDescriptor) -> FillOutcome:
        """
        Try each strategy of the descriptor in order, stop at the first
        verified write.

        Returns:
            FillOutcome: succeeded=False when every strategy was exhausted
        """
        for strategy in descriptor.strategies:
            element = await self.locator.resolve(strategy)
            if not element:
                continue

            logger.info(f"Filling {descriptor.name} with: {descriptor.value}")
            try:
                observed = await self._write_kind(element, descriptor)
            except PlaywrightError as e:
                logger.warning(f"Error filling {descriptor.name} with {strategy.describe()}: {e}")
                continue

            if observed is not None:
                logger.info(f"{descriptor.name} successfully filled")
                return FillOutcome(descriptor.name, True, observed)

        logger.error(f"Could not fill {descriptor.name}")
        return FillOutcome(descriptor.name, False)

    async def _write_kind(self, element: ElementHandle, descriptor: FieldDescriptor):
        """Returns the observed value on a verified write, None otherwise"""
        kind = descriptor.kind
        if kind == FieldKind.RADIO:
            return await self._write_radio(element, descriptor)
        if kind == FieldKind.SELECT:
            return await self._write_select(element, descriptor)
        if kind in (FieldKind.TEXT, FieldKind.DATE):
            return await self._write_text(element, descriptor)
        if kind == FieldKind.CHECKBOX:
            return await self._write_checkbox(element, descriptor)
        raise ValueError(f"Unsupported field kind: {kind}")

    async def _write_radio(self, element: ElementHandle, descriptor: FieldDescriptor):
        await element.click()
        await self.waiter.settle(WAIT_FIELD)

        if await element.is_checked():
            return descriptor.value
        logger.warning(f"{descriptor.name} selection not registered")
        return None

    async def _read_select(self, element: ElementHandle) -> dict:
        return await element.evaluate(SELECT_STATE_SCRIPT)

    @staticmethod
    def _select_matches(state: dict, target: str) -> bool:
        # An empty target would match the placeholder option
        if state.get("tag") != "select" or not target:
            return False
        return state.get("value") == target or target in state.get("text", "")

    async def _write_select(self, element: ElementHandle, descriptor: FieldDescriptor):
        target = "" if descriptor.value is None else str(descriptor.value)
        if not target:
            logger.warning(f"No option value given for {descriptor.name}")
            return None

        try:
            await element.select_option(value=target)
        except PlaywrightError as e:
            logger.debug(f"Native selection of '{target}' failed for {descriptor.name}: {e}")
        await self.waiter.settle(WAIT_FIELD)

        state = await self._read_select(element)
        if self._select_matches(state, target):
            return state.get("text") or state.get("value")

        # Fall back to opening the control and picking the option by its label
        logger.warning(f"{descriptor.name} selection not registered, trying click selection")
        await element.click()
        options = await element.evaluate(OPTIONS_SCRIPT)
        label = next((o["text"] for o in options if o["value"] == target), target)
        try:
            await element.select_option(label=label)
        except PlaywrightError as e:
            logger.debug(f"Label selection of '{target}' failed for {descriptor.name}: {e}")
            return None
        await self.waiter.settle(WAIT_FIELD)

        state = await self._read_select(element)
        if self._select_matches(state, target):
            return state.get("text") or state.get("value")
        return None

    async def _write_text(self, element: ElementHandle, descriptor: FieldDescriptor):
        target = str(descriptor.value)

        await element.focus()
        await element.evaluate(CLEAR_VALUE_SCRIPT)
        await element.type(target, delay=self.type_delay)
        await element.evaluate(NOTIFY_CHANGE_SCRIPT)
        await self.waiter.settle(WAIT_FIELD)

        actual = await element.input_value()
        if actual == target or (target and target in actual):
            return actual

        logger.warning(f"{descriptor.name} value not registered. Expected: {target}, Got: {actual}")

        # Retry: select everything and type over it
        await element.focus()
        await self.page.keyboard.press("Control+A")
        await self.page.keyboard.type(target)
        await self.waiter.settle(WAIT_SHORT)

        retry_value = await element.input_value()
        if retry_value == target:
            logger.info(f"{descriptor.name} successfully filled on retry")
            return retry_value
        return None

    async def _write_checkbox(self, element: ElementHandle, descriptor: FieldDescriptor):
        target = bool(descriptor.value)

        if await element.is_checked() != target:
            await element.click()
            await self.waiter.settle(WAIT_FIELD)

        if await element.is_checked() == target:
            return target
        logger.warning(f"{descriptor.name} checkbox state not registered")
        return None
