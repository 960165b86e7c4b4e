"""
Pytest configuration and in-memory Playwright fakes.

The fakes implement just the page/element surface the automation uses, so
form behaviour (hidden sections, radio groups, inputs that reject a date
format, custom dropdowns) can be simulated without a browser.
"""

import os
import sys
from pathlib import Path

import pytest

# Must be set before config is imported
os.environ["START_WORKERS_ON_IMPORT"] = "False"
os.environ["SETTLE_TIME_SCALE"] = "0"
os.environ["RESULT_WEBHOOK_URL"] = ""
os.environ["ENABLE_TRACING"] = "False"

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from playwright.async_api import Error as PlaywrightError

from allianz_quote import FORM_STRUCTURE_SCRIPT
from field_discovery import DESCRIBE_CONTROL_SCRIPT, OPTIONS_SCRIPT
from form_engine import CLEAR_VALUE_SCRIPT, NOTIFY_CHANGE_SCRIPT, SELECT_STATE_SCRIPT
from quote_extractor import COLLECT_RESULTS_SCRIPT


# ============ Fakes ============

class FakeElement:
    """A form control. Only what the automation touches is modelled."""

    def __init__(self, tag="input", type="text", id="", name="", value="", label="",
                 placeholder="", class_name="", options=None, checked=False, visible=True,
                 enabled=True, clickable=True, accepts=None, on_click=None,
                 native_select_ignored=False):
        self.page = None
        self.tag = tag
        self.input_type = type
        self.id = id
        self.name = name
        self.value = value
        self.label = label
        self.placeholder = placeholder
        self.class_name = class_name
        self.options = list(options or [])
        self.checked = checked
        self.visible = visible
        self.enabled = enabled
        self.clickable = clickable
        self.accepts = accepts
        self.on_click = on_click
        self.native_select_ignored = native_select_ignored
        self.detached = False
        self.clicks = 0
        self.typed = []

    def __repr__(self):
        return f"<FakeElement {self.tag} id={self.id!r} name={self.name!r} value={self.value!r}>"

    # -- state helpers --

    def apply_accepts(self):
        """A reactive input throws away values it does not understand"""
        if self.accepts is not None and not self.accepts(self.value):
            self.value = ""

    def selected_text(self):
        for value, text in self.options:
            if value == self.value:
                return text
        return ""

    def describe(self):
        return {
            "tag": self.tag,
            "type": self.input_type if self.tag == "input" else "",
            "id": self.id,
            "name": self.name,
            "value": self.value,
            "className": self.class_name,
            "placeholder": self.placeholder,
            "labelText": self.label,
        }

    # -- ElementHandle surface --

    async def bounding_box(self):
        if self.detached:
            raise PlaywrightError("Element is not attached to the DOM")
        if not self.visible:
            return None
        return {"x": 10, "y": 10, "width": 120, "height": 24}

    async def click(self):
        self.clicks += 1
        if self.clickable:
            if self.input_type == "radio":
                for other in self.page.elements:
                    if other.input_type == "radio" and other.name == self.name:
                        other.checked = False
                self.checked = True
            elif self.input_type == "checkbox":
                self.checked = not self.checked
        if self.on_click:
            self.on_click(self.page)

    async def is_checked(self):
        return self.checked

    async def is_enabled(self):
        return self.enabled

    async def focus(self):
        self.page.focused = self

    async def type(self, text, delay=None):
        self.typed.append(text)
        self.value += text

    async def input_value(self):
        return self.value

    async def select_option(self, value=None, label=None):
        for option_value, option_text in self.options:
            if value is not None and option_value == value:
                if not self.native_select_ignored:
                    self.value = option_value
                return [option_value]
            if label is not None and option_text == label:
                self.value = option_value
                return [option_value]
        raise PlaywrightError(f"No option matching value={value!r} label={label!r}")

    async def evaluate(self, script, arg=None):
        if script == CLEAR_VALUE_SCRIPT:
            self.value = ""
            return None
        if script == NOTIFY_CHANGE_SCRIPT:
            self.apply_accepts()
            return None
        if script == SELECT_STATE_SCRIPT:
            return {"tag": self.tag, "value": self.value, "text": self.selected_text()}
        if script == DESCRIBE_CONTROL_SCRIPT:
            return self.describe()
        if script == OPTIONS_SCRIPT:
            return [{"value": v, "text": t} for v, t in self.options]
        raise AssertionError(f"Unexpected element script: {script[:60]}")


class FakeKeyboard:

    def __init__(self, page):
        self.page = page
        self.pressed = []
        self.select_all = False

    async def press(self, key):
        self.pressed.append(key)
        if key == "Control+A":
            self.select_all = True

    async def type(self, text, delay=None):
        element = self.page.focused
        if element is None:
            return
        element.value = text if self.select_all else element.value + text
        self.select_all = False
        element.apply_accepts()


class FakePage:
    """Selector registry plus document-ordered element list"""

    def __init__(self):
        self.elements = []
        self.selectors = {}
        self.focused = None
        self.keyboard = FakeKeyboard(self)
        self.body_text = ""
        self.results_snapshot = {}
        self.screenshots = []
        self.visited = []
        self.goto_error = None
        self.loaders_stuck = False
        self.wait_calls = 0

    def add(self, element, *selectors):
        element.page = self
        self.elements.append(element)
        keys = list(selectors)
        if element.id:
            keys.append(f"#{element.id}")
        for selector in keys:
            self.selectors.setdefault(selector, []).append(element)
        return element

    async def query_selector(self, selector):
        matches = self.selectors.get(selector, [])
        return matches[0] if matches else None

    async def query_selector_all(self, selector):
        if selector == "input, select":
            return [e for e in self.elements if e.tag in ("input", "select")]
        return list(self.selectors.get(selector, []))

    async def wait_for_function(self, script, timeout=None):
        self.wait_calls += 1
        if self.loaders_stuck:
            raise PlaywrightError(f"Timeout {timeout}ms exceeded")

    async def goto(self, url, wait_until=None, timeout=None):
        if self.goto_error:
            raise self.goto_error
        self.visited.append(url)

    async def wait_for_selector(self, selector, timeout=None):
        return None

    async def inner_text(self, selector):
        return self.body_text

    async def screenshot(self, path, full_page=False):
        Path(path).write_bytes(b"\x89PNG")
        self.screenshots.append(Path(path).name)

    async def evaluate(self, script, arg=None):
        if script == FORM_STRUCTURE_SCRIPT:
            return {"inputs": [
                {"type": e.input_type, "name": e.name, "id": e.id, "visible": True}
                for e in self.elements if e.visible and (e.name or e.id)
            ]}
        if script == COLLECT_RESULTS_SCRIPT:
            return self.results_snapshot
        raise AssertionError(f"Unexpected page script: {script[:60]}")


# ============ Simulated Allianz calculator ============

RESULTS_BODY = "Ihr Angebot\nTarif Komfort\n45,90 € monatlich\nTarif Premium\n61,20 € monatlich"

RESULTS_SNAPSHOT = {
    "prices": [
        {"selector": '[class*="price"]', "index": 0, "text": "45,90 €", "context": "Komfort 45,90 €"},
        {"selector": '[class*="price"]', "index": 1, "text": "61,20 €", "context": "Premium 61,20 €"},
        {"selector": '[class*="beitrag"]', "index": 0, "text": "Monatlicher Beitrag", "context": ""},
    ],
    "cards": [
        {"selector": '[class*="tarif"]', "index": 0, "title": "Komfort", "price": "45,90 €",
         "description": "Vollkasko mit Werkstattbindung", "fullText": "Komfort 45,90 €"},
        {"selector": '[class*="tarif"]', "index": 1, "title": "", "price": "", "description": "", "fullText": ""},
    ],
    "coverage": [
        {"selector": '[class*="leistung"]', "index": 0, "text": "Schutzbrief mit Pannenhilfe"},
        {"selector": '[class*="leistung"]', "index": 1, "text": "kurz"},
    ],
    "resultIndicators": 2,
    "bodyText": RESULTS_BODY,
    "url": "https://www.allianz.de/auto/kfz-versicherung/rechner/#/result",
    "title": "Kfz-Versicherung Rechner",
    "hasVisibleContent": True,
}

SF_OPTIONS = [("", "Bitte wählen"), ("SF0", "SF 0"), ("SF1", "SF 1"), ("SF2", "SF 2"), ("SF3", "SF 3")]


class QuoteFormPage(FakePage):
    """
    The calculator as the automation sees it: fixed-id controls, sections
    that render only after an earlier answer, and a result page behind the
    submit button.
    """

    def __init__(self, start_date_accepts=None, with_submit=True, result_body=RESULTS_BODY,
                 insurers=(("HUK", "HUK-COBURG"), ("ANDERE", "Anderer Versicherer"))):
        super().__init__()
        self.body_text = "Kfz-Versicherung berechnen"

        # Vehicle identification and basics
        self.hsn = self.add(FakeElement(name="hsn"), 'input[name*="hsn"]')
        self.tsn = self.add(FakeElement(name="tsn"), 'input[name*="tsn"]')
        self.plz = self.add(FakeElement(id="vnPostleitzahl-id", name="vnPostleitzahl", placeholder="5-stellige PLZ"))
        self.usage = self.add(FakeElement(type="radio", id="fahrzeugnutzung-PRIVAT-id-input",
                                          name="fahrzeugnutzung", value="PRIVAT", label="Privat"))

        # Insurance reason
        self.reason_new = self.add(FakeElement(type="radio", id="situation-NEUES_FAHRZEUG-id-input",
                                               name="situation", value="NEUES_FAHRZEUG", label="Neues Fahrzeug"))
        self.reason_switch = self.add(FakeElement(type="radio", id="situation-WECHSEL-id-input",
                                                  name="situation", value="WECHSEL", label="Versicherer-Wechsel"))

        # Personal data
        self.birth_date = self.add(FakeElement(id="geburtsdatum-id", name="geburtsdatum", placeholder="TT.MM.JJJJ"))
        self.licence_year = self.add(FakeElement(id="fuehrerscheinerwerbsdatumVn23Year",
                                                 name="fuehrerscheinerwerbsdatum", placeholder="JJJJ"))
        self.profession = self.add(FakeElement(tag="select", id="berufsgruppe-id", name="berufsgruppe", options=[
            ("", "Bitte wählen"),
            ("OEFFENTLICH", "Öffentlicher Dienst"),
            ("ALLGEMEIN", "Allgemeine Berufsgruppen (Sonstige)"),
        ]))

        self.youngest_driver = FakeElement(id="juengsterFahrerGeburtsdatum", name="juengsterFahrer",
                                           placeholder="TT.MM.JJJJ", visible=False)
        self.drivers_only_vn = self.add(FakeElement(type="radio", id="fahrerkreis-VN-id-input",
                                                    name="fahrerkreis", value="VN", label="Nur ich"))
        self.drivers_any = self.add(FakeElement(type="radio", id="fahrerkreis-BELIEBIGE-id-input",
                                                name="fahrerkreis", value="BELIEBIGE", label="Weitere Fahrer",
                                                on_click=lambda page: setattr(page.youngest_driver, "visible", True)))
        self.add(self.youngest_driver)

        # Vehicle details
        self.owner_self = self.add(FakeElement(type="radio", id="fahrzeughalter-ICH_SELBST-input",
                                               name="fahrzeughalter", value="ICH_SELBST", label="Ich selbst"))
        self.owner_partner = self.add(FakeElement(type="radio", id="fahrzeughalter-PARTNER-input",
                                                  name="fahrzeughalter", value="PARTNER", label="Ehe-/Lebenspartner"))
        self.registration_month = self.add(FakeElement(id="erstzulassungMonth", name="erstzulassung-name", placeholder="MM"))
        self.registration_year = self.add(FakeElement(id="erstzulassungYear", name="erstzulassung-name", placeholder="JJJJ"))
        self.new_vehicle = self.add(FakeElement(type="checkbox", id="nx-checkbox-neuwagen-id", name="neuwagen-name"))
        self.mileage = self.add(FakeElement(id="jahresfahrleistung-id", name="jahresfahrleistung-name"))
        self.plate_type = self.add(FakeElement(type="radio", id="kennzeichenart-NORMAL-id-input",
                                               name="kennzeichenart", value="NORMAL", label="Normal"))
        self.seasonal_plate = self.add(FakeElement(type="radio", id="kennzeichenSaison-NEIN-id-input",
                                                   name="kennzeichenSaison", value="NEIN", label="Nein"))

        # Previous insurance (insurer switch only)
        self.switch_month = self.add(FakeElement(id="erstzulassungVnMonth", name="erstzulassungVn", placeholder="MM"))
        self.switch_year = self.add(FakeElement(id="erstzulassungVnYear", name="erstzulassungVn", placeholder="JJJJ"))
        self.insurer_options = [
            self.add(FakeElement(type="radio", id=f"vorversicherer-{value}", name="vorversicherer",
                                 value=value, label=label))
            for value, label in insurers
        ]

        # Coverage and dates
        self.sf_haftpflicht = FakeElement(tag="select", id="sf-haftpflicht", name="sfKlasseHaftpflicht",
                                          options=SF_OPTIONS, visible=False)
        self.sf_vollkasko = FakeElement(tag="select", id="sf-vollkasko", name="sfKlasseVollkasko",
                                        options=SF_OPTIONS, visible=False)
        self.sf_classification = self.add(FakeElement(
            type="radio", id="sfEinstufung-VORVERTRAG-id-input", name="sfEinstufung", value="VORVERTRAG",
            label="SF-Klasse aus Vorvertrag übernehmen", on_click=self._show_sf_classes,
        ))
        self.add(self.sf_haftpflicht)
        self.add(self.sf_vollkasko)
        self.coverage = {
            value: self.add(FakeElement(type="radio", id=f"deckung-{value}", name="deckung", value=value, label=label))
            for value, label in (("HAFTPFLICHT", "Haftpflicht"), ("TEILKASKO", "Teilkasko"), ("VOLLKASKO", "Vollkasko"))
        }
        self.claims_yes = self.add(FakeElement(type="radio", id="schaeden-JA", name="schaeden", value="JA", label="Ja"))
        self.claims_no = self.add(FakeElement(type="radio", id="schaeden-NEIN", name="schaeden", value="NEIN", label="Nein"))
        self.start_date = self.add(FakeElement(id="versicherungsbeginn-id", name="versicherungsbeginn",
                                               placeholder="TT.MM.JJJJ", accepts=start_date_accepts))

        self.result_body = result_body
        if with_submit:
            self.submit = self.add(FakeElement(tag="button", type="submit", class_name="btn-berechnen",
                                               on_click=self._show_results),
                                   'button:has-text("JETZT berechnen")')

    def _show_sf_classes(self, page):
        self.sf_haftpflicht.visible = True
        self.sf_vollkasko.visible = True

    def _show_results(self, page):
        self.body_text = self.result_body
        self.results_snapshot = dict(RESULTS_SNAPSHOT, bodyText=self.result_body)


# ============ Fixtures ============

@pytest.fixture
def fake_page():
    return FakePage()


@pytest.fixture
def quote_page():
    return QuoteFormPage()


@pytest.fixture
def sink(tmp_path):
    from result_sink import ResultSink
    return ResultSink(dataset_dir=tmp_path / "datasets", webhook_url=None)
