"""
Tests for locating, writing and verifying form controls.

Uses the in-memory page from conftest; no browser required.
"""

import re

import pytest

from conftest import FakeElement
from form_engine import FieldLocator, StabilizationWaiter, VerifiedFieldWriter
from quote_models import (
    DiscoveredCandidate,
    DiscoveredStrategy,
    FieldDescriptor,
    FieldKind,
    SelectorStrategy,
    selector_strategies,
)


@pytest.fixture
def writer(fake_page):
    waiter = StabilizationWaiter(fake_page, time_scale=0)
    return VerifiedFieldWriter(fake_page, waiter)


def text_field(name, value, *selectors, kind=FieldKind.TEXT):
    return FieldDescriptor(name, selector_strategies(*selectors), kind, value)


# ============ StabilizationWaiter ============

class TestStabilizationWaiter:

    async def test_settle_polls_for_loaders(self, fake_page):
        await StabilizationWaiter(fake_page, time_scale=0).settle(3000)

        assert fake_page.wait_calls == 1

    async def test_settle_never_raises_on_timeout(self, fake_page):
        fake_page.loaders_stuck = True

        await StabilizationWaiter(fake_page, time_scale=0).settle()

        assert fake_page.wait_calls == 1


# ============ FieldLocator ============

class TestFieldLocator:

    async def test_first_visible_strategy_wins(self, fake_page):
        hidden = fake_page.add(FakeElement(id="hidden", visible=False))
        shown = fake_page.add(FakeElement(id="shown"))

        found = await FieldLocator(fake_page).locate(selector_strategies("#missing", "#hidden", "#shown"))

        assert found is shown
        assert found is not hidden

    async def test_nothing_visible(self, fake_page):
        fake_page.add(FakeElement(id="hidden", visible=False))

        assert await FieldLocator(fake_page).locate(selector_strategies("#hidden")) is None

    async def test_detached_element_is_not_visible(self, fake_page):
        element = fake_page.add(FakeElement(id="gone"))
        element.detached = True

        assert await FieldLocator.is_visible(element) is False

    async def test_discovered_strategy_uses_handle(self, fake_page):
        element = fake_page.add(FakeElement(name="anything"))
        candidate = DiscoveredCandidate(handle=element, selector='input[name="anything"]',
                                        kind=FieldKind.TEXT, context="anything")

        assert await FieldLocator(fake_page).resolve(DiscoveredStrategy(candidate)) is element

    async def test_unknown_strategy_rejected(self, fake_page):
        with pytest.raises(TypeError):
            await FieldLocator(fake_page).resolve("#plain-string")


# ============ VerifiedFieldWriter: text ============

class TestTextWrite:

    async def test_value_typed_and_verified(self, fake_page, writer):
        element = fake_page.add(FakeElement(id="plz", value="old"))

        outcome = await writer.write(text_field("PLZ", "80331", "#plz"))

        assert outcome.succeeded
        assert outcome.observed_value == "80331"
        assert element.value == "80331"
        assert element.typed == ["80331"]

    async def test_retry_with_keyboard_when_first_write_rejected(self, fake_page, writer):
        # Rejects the first write only, as if the input was still re-rendering
        attempts = []

        def accepts(value):
            attempts.append(value)
            return len(attempts) > 1

        element = fake_page.add(FakeElement(id="hsn", accepts=accepts))

        outcome = await writer.write(text_field("HSN", "0005", "#hsn"))

        assert outcome.succeeded
        assert element.value == "0005"
        assert fake_page.keyboard.pressed == ["Control+A"]

    async def test_rejected_value_is_a_failure(self, fake_page, writer):
        fake_page.add(FakeElement(id="date", accepts=lambda v: bool(re.fullmatch(r"\d{4}-\d{2}-\d{2}", v))))

        outcome = await writer.write(text_field("Datum", "01.06.2025", "#date", kind=FieldKind.DATE))

        assert not outcome.succeeded
        assert outcome.observed_value is None

    async def test_next_strategy_after_failure(self, fake_page, writer):
        fake_page.add(FakeElement(id="first", accepts=lambda v: False))
        second = fake_page.add(FakeElement(id="second"))

        outcome = await writer.write(text_field("Feld", "abc", "#first", "#second"))

        assert outcome.succeeded
        assert second.value == "abc"

    async def test_no_element_found(self, fake_page, writer):
        outcome = await writer.write(text_field("Feld", "abc", "#nowhere"))

        assert not outcome.succeeded


# ============ VerifiedFieldWriter: radio / checkbox ============

class TestChoiceWrite:

    async def test_radio_checked(self, fake_page, writer):
        first = fake_page.add(FakeElement(type="radio", id="a", name="group", checked=True))
        second = fake_page.add(FakeElement(type="radio", id="b", name="group"))

        outcome = await writer.write(FieldDescriptor("Gruppe", selector_strategies("#b"), FieldKind.RADIO, "B"))

        assert outcome.succeeded
        assert second.checked
        assert not first.checked

    async def test_radio_click_not_registered(self, fake_page, writer):
        fake_page.add(FakeElement(type="radio", id="dead", name="group", clickable=False))

        outcome = await writer.write(FieldDescriptor("Gruppe", selector_strategies("#dead"), FieldKind.RADIO, "X"))

        assert not outcome.succeeded

    async def test_checkbox_left_alone_when_already_in_state(self, fake_page, writer):
        box = fake_page.add(FakeElement(type="checkbox", id="box"))

        outcome = await writer.write(FieldDescriptor("Neuwagen", selector_strategies("#box"), FieldKind.CHECKBOX, False))

        assert outcome.succeeded
        assert box.clicks == 0

    async def test_checkbox_toggled(self, fake_page, writer):
        box = fake_page.add(FakeElement(type="checkbox", id="box"))

        outcome = await writer.write(FieldDescriptor("Neuwagen", selector_strategies("#box"), FieldKind.CHECKBOX, True))

        assert outcome.succeeded
        assert box.checked


# ============ VerifiedFieldWriter: select ============

class TestSelectWrite:

    OPTIONS = [("", "Bitte wählen"), ("Teilkasko", "Teilkasko"), ("Vollkasko", "Vollkasko")]

    async def test_native_selection(self, fake_page, writer):
        select = fake_page.add(FakeElement(tag="select", id="deckung", options=self.OPTIONS))

        outcome = await writer.write(FieldDescriptor("Deckung", selector_strategies("#deckung"), FieldKind.SELECT, "Vollkasko"))

        assert outcome.succeeded
        assert outcome.observed_value == "Vollkasko"
        assert select.value == "Vollkasko"

    async def test_falls_back_to_label_selection(self, fake_page, writer):
        select = fake_page.add(FakeElement(tag="select", id="deckung", options=self.OPTIONS,
                                           native_select_ignored=True))

        outcome = await writer.write(FieldDescriptor("Deckung", selector_strategies("#deckung"), FieldKind.SELECT, "Teilkasko"))

        assert outcome.succeeded
        assert select.value == "Teilkasko"
        assert select.clicks == 1

    async def test_label_fallback_with_coded_values(self, fake_page, writer):
        select = fake_page.add(FakeElement(tag="select", id="sf", options=[("", "Bitte wählen"), ("SF2", "SF 2")],
                                           native_select_ignored=True))

        outcome = await writer.write(FieldDescriptor("SF", selector_strategies("#sf"), FieldKind.SELECT, "SF2"))

        assert outcome.succeeded
        assert outcome.observed_value == "SF 2"
        assert select.value == "SF2"

    @pytest.mark.parametrize("value", ["", None])
    async def test_empty_value_never_verified(self, fake_page, writer, value):
        select = fake_page.add(FakeElement(tag="select", id="deckung", options=self.OPTIONS))

        outcome = await writer.write(FieldDescriptor("Deckung", selector_strategies("#deckung"), FieldKind.SELECT, value))

        assert not outcome.succeeded
        assert select.value == ""

    async def test_missing_option_fails(self, fake_page, writer):
        fake_page.add(FakeElement(tag="select", id="deckung", options=self.OPTIONS))

        outcome = await writer.write(FieldDescriptor("Deckung", selector_strategies("#deckung"), FieldKind.SELECT, "Kasko Plus"))

        assert not outcome.succeeded

    async def test_select_on_plain_input_is_not_verified(self, fake_page, writer):
        fake_page.add(FakeElement(id="fake-select", options=self.OPTIONS))

        outcome = await writer.write(FieldDescriptor("Deckung", (SelectorStrategy("#fake-select"),), FieldKind.SELECT, "Vollkasko"))

        assert not outcome.succeeded
