"""
Allianz Quote Automation
Fills the Allianz car insurance calculator step by step and captures the offer
"""
import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from playwright.async_api import async_playwright, Browser, BrowserContext, Error as PlaywrightError, Page

from config import (
    ALLIANZ_QUOTE_URL,
    BROWSER_ARGS,
    BROWSER_HEADLESS,
    BROWSER_TIMEOUT,
    BROWSER_USER_AGENT,
    DATE_TYPE_DELAY_MS,
    ENABLE_TRACING,
    LOG_DIR,
    PROXY_PASSWORD,
    PROXY_SERVER,
    PROXY_USERNAME,
    SCREENSHOT_DIR,
    TIMEOUT_BODY,
    TIMEOUT_PAGE,
    TRACE_DIR,
    WAIT_BRANCH,
    WAIT_COOKIE_BANNER,
    WAIT_FIELD,
    WAIT_PAGE_LOAD,
    WAIT_RESULTS,
    WAIT_SECTION,
)
from field_discovery import FieldDiscoverer, option_text_contains, sf_class_option
from form_data import date_encodings, mileage_in_thousands, prepare_form_data
from form_engine import FieldLocator, StabilizationWaiter, VerifiedFieldWriter
from quote_extractor import capture_quote
from quote_models import (
    DiscoveredCandidate,
    DiscoveredStrategy,
    FieldDescriptor,
    FieldKind,
    FillOutcome,
    QuoteAutomationError,
    RunContext,
    RunReport,
    RunStatus,
    SelectorStrategy,
    SubmitResult,
    insurance_reason_for,
    selector_strategies,
)
from result_sink import ResultSink

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOG_DIR / 'allianz_quote.log'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


# Lists visible named form controls for the run report
FORM_STRUCTURE_SCRIPT = '''
    () => {
        const inputs = Array.from(document.querySelectorAll('input, select, textarea, button'));
        return {
            inputs: inputs.map(input => ({
                type: input.type,
                name: input.name,
                id: input.id,
                placeholder: input.placeholder,
                value: input.value,
                classes: typeof input.className === 'string' ? input.className : '',
                visible: input.offsetWidth > 0 && input.offsetHeight > 0
            })).filter(input => input.visible && (input.name || input.id))
        };
    }
'''

# Both must be filled for a run to count as SUCCESS
CRITICAL_FIELDS = ("Versicherungsgrund", "Versicherungsbeginn")

START_DATE_KEYWORDS = (
    "versicherungsbeginn", "beginn", "start", "gueltig", "gültig", "datum", "tt.mm", "dd.mm",
)
START_DATE_EXCLUDE = (
    "geburt", "fuehrerschein", "führerschein", "erstzulassung", "postleitzahl",
    "hsn", "tsn", "jahresfahrleistung", "schaden",
)


def rank_candidates(candidates: Sequence[DiscoveredCandidate],
                    *tiers: Callable[[DiscoveredCandidate], bool]) -> List[DiscoveredCandidate]:
    """Order candidates by the first tier they satisfy; drop those matching none"""
    ranked = []
    for tier in tiers:
        for candidate in candidates:
            if candidate not in ranked and tier(candidate):
                ranked.append(candidate)
    return ranked


class AllianzQuote:
    """Handles Allianz car insurance quote automation"""

    COOKIE_SELECTORS = [
        '#onetrust-accept-btn-handler',
        'button:has-text("Alle akzeptieren")',
        'button:has-text("Akzeptieren")',
        '.onetrust-close-btn-handler',
    ]

    SUBMIT_SELECTORS = [
        'button:has-text("JETZT berechnen")',
        'button:has-text("Jetzt berechnen")',
        'button:has-text("Berechnen")',
        '[class*="berechnen"]',
    ]

    # Step method -> screenshot checkpoint
    STEP_CHECKPOINTS = {
        "fill_vehicle_identification": "vehicle-identification",
        "fill_basic_information": "basic-information",
        "fill_insurance_reason": "insurance-reason",
        "fill_personal_data": "personal-data",
        "fill_vehicle_details": "vehicle-details",
        "fill_previous_insurance_data": "previous-insurance",
        "fill_coverage_and_dates": "coverage-dates",
    }

    STEPS_BEFORE_BRANCH = (
        "fill_vehicle_identification",
        "fill_basic_information",
        "fill_insurance_reason",
        "fill_personal_data",
        "fill_vehicle_details",
    )
    STEPS_AFTER_BRANCH = (
        "fill_coverage_and_dates",
    )

    def __init__(self, run_id: Optional[str] = None, url: str = ALLIANZ_QUOTE_URL, page: Optional[Page] = None,
                 sink: Optional[ResultSink] = None, time_scale: Optional[float] = None, screenshot_dir: Path = SCREENSHOT_DIR):
        """
        Initialize AllianzQuote

        Args:
            run_id: Identifier used for screenshots, trace and report naming
            url: Quote calculator URL
            page: An already open page; when omitted a browser is launched on run()
            sink: Where the run report goes (defaults to the dataset directory)
            time_scale: Multiplier for settle waits (0 in dry runs)
            screenshot_dir: Root directory for diagnostic screenshots
        """
        self.run_id = run_id or f"run_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
        self.url = url
        self.sink = sink if sink is not None else ResultSink()
        self.time_scale = time_scale
        self.screenshot_dir = Path(screenshot_dir) / self.run_id

        # Browser components
        self.playwright = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self.trace_path = TRACE_DIR / f"{self.run_id}.zip" if ENABLE_TRACING else None

        if page is not None:
            self._attach(page)

        logger.info(f"AllianzQuote initialized for run: {self.run_id}")

    def _attach(self, page: Page) -> None:
        self.page = page
        self.waiter = StabilizationWaiter(page, time_scale=self.time_scale)
        self.locator = FieldLocator(page)
        self.writer = VerifiedFieldWriter(page, self.waiter, self.locator)
        self.date_writer = VerifiedFieldWriter(page, self.waiter, self.locator, type_delay=DATE_TYPE_DELAY_MS)
        self.discoverer = FieldDiscoverer(page, self.locator)

    async def init_browser(self) -> None:
        """Launch Chromium with the configured proxy and open a page"""
        self.playwright = await async_playwright().start()

        launch_options = {"headless": BROWSER_HEADLESS, "args": BROWSER_ARGS}
        if PROXY_SERVER:
            proxy = {"server": PROXY_SERVER}
            if PROXY_USERNAME:
                proxy["username"] = PROXY_USERNAME
                proxy["password"] = PROXY_PASSWORD
            launch_options["proxy"] = proxy
            logger.info(f"Using proxy: {PROXY_SERVER}")

        self.browser = await self.playwright.chromium.launch(**launch_options)
        self.context = await self.browser.new_context(
            viewport={"width": 1920, "height": 1080},
            user_agent=BROWSER_USER_AGENT,
            locale="de-DE",
        )

        if ENABLE_TRACING and self.trace_path:
            await self.context.tracing.start(screenshots=True, snapshots=True, sources=True)
            logger.info(f"Tracing ENABLED - will save to: {self.trace_path}")

        page = await self.context.new_page()
        page.set_default_timeout(BROWSER_TIMEOUT)
        self._attach(page)

        logger.info("Browser initialized")

    async def navigate(self) -> None:
        """Open the calculator; navigation errors are fatal for the run"""
        logger.info(f"Processing Allianz insurance quote form: {self.url}")

        await self.page.goto(self.url, wait_until="domcontentloaded", timeout=TIMEOUT_PAGE)
        await self.waiter.settle(WAIT_PAGE_LOAD)
        await self.page.wait_for_selector('body', timeout=TIMEOUT_BODY)

    async def handle_cookie_notification(self) -> bool:
        """
        Accept the cookie banner if one is showing

        Returns:
            bool: True if a banner button was clicked
        """
        logger.info("Handling cookie notifications...")
        await self.waiter.settle(WAIT_COOKIE_BANNER)

        button = await self.locator.locate(selector_strategies(*self.COOKIE_SELECTORS))
        if not button:
            logger.info("No cookie notification visible, continuing...")
            return False

        try:
            await button.click()
        except PlaywrightError as e:
            logger.warning(f"Could not accept cookie notification: {e}")
            return False

        await self.waiter.settle(WAIT_FIELD)
        logger.info("Cookie notification handled")
        return True

    async def analyze_form_structure(self) -> dict:
        logger.info("Analyzing form structure...")
        try:
            form_info = await self.page.evaluate(FORM_STRUCTURE_SCRIPT)
        except PlaywrightError as e:
            logger.warning(f"Could not analyze form structure: {e}")
            return {"inputs": []}

        logger.info(f"Found {len(form_info.get('inputs', []))} visible form elements")
        return form_info

    async def take_screenshot(self, ctx: RunContext, name: str) -> Optional[str]:
        """Full page screenshot, recorded by file name in the run context"""
        self.screenshot_dir.mkdir(parents=True, exist_ok=True)
        path = self.screenshot_dir / f"{name}.png"
        try:
            await self.page.screenshot(path=str(path), full_page=True)
        except PlaywrightError as e:
            logger.warning(f"Could not take screenshot '{name}': {e}")
            return None
        ctx.screenshots.append(path.name)
        return path.name

    # ============ Field helpers ============

    async def fill(self, ctx: RunContext, name: str, kind: FieldKind, value, selectors: Iterable[str],
                   display=None, error: Optional[str] = None) -> bool:
        """Fill a field with fixed selectors and record the outcome"""
        descriptor = FieldDescriptor(name, selector_strategies(*selectors), kind, value)
        outcome = await self.writer.write(descriptor)
        if outcome.succeeded and display is not None:
            outcome = FillOutcome(name, True, display)
        return ctx.record_outcome(outcome, error)

    async def try_candidates(self, name: str, kind: FieldKind, candidates: Iterable[DiscoveredCandidate],
                             value=None, writer: Optional[VerifiedFieldWriter] = None) -> FillOutcome:
        """Write to discovered candidates in order until one verifies"""
        writer = writer or self.writer
        for candidate in candidates:
            target = candidate.value if value is None else value
            descriptor = FieldDescriptor(name, (DiscoveredStrategy(candidate),), kind, target)
            outcome = await writer.write(descriptor)
            if outcome.succeeded:
                return FillOutcome(name, True, candidate.label_text or outcome.observed_value)
        return FillOutcome(name, False)

    async def select_discovered_option(self, name: str, candidates: Iterable[DiscoveredCandidate],
                                       predicate) -> FillOutcome:
        """For discovered selects: pick the first option matching predicate and select it"""
        for candidate in candidates:
            option = await self.discoverer.find_option(candidate, predicate)
            if not option:
                continue
            descriptor = FieldDescriptor(name, (DiscoveredStrategy(candidate),), FieldKind.SELECT, option["value"])
            outcome = await self.writer.write(descriptor)
            if outcome.succeeded:
                return FillOutcome(name, True, option["text"])
        return FillOutcome(name, False)

    # ============ Steps ============

    async def fill_vehicle_identification(self, ctx: RunContext) -> RunContext:
        logger.info("Step 1: Vehicle identification...")
        record = ctx.record

        if record["hsn"] and record["tsn"]:
            await self.fill(ctx, "HSN", FieldKind.TEXT, record["hsn"], [
                'input[name*="hsn"]', '#hsn-input', 'input[placeholder*="HSN"]',
            ])
            await self.fill(ctx, "TSN", FieldKind.TEXT, record["tsn"], [
                'input[name*="tsn"]', '#tsn-input', 'input[placeholder*="TSN"]',
            ])
            # Vehicle lookup runs after both keys are in
            await self.waiter.settle(WAIT_SECTION)

        return ctx

    async def fill_basic_information(self, ctx: RunContext) -> RunContext:
        logger.info("Step 2: Basic information...")
        record = ctx.record

        await self.fill(ctx, "PLZ", FieldKind.TEXT, record["postleitzahl"], [
            'input[name*="postleitzahl"]',
            'input[placeholder*="5-stellige"]',
            '#vnPostleitzahl-id',
        ])

        usage = record["nutzungDesFahrzeugs"].upper()
        await self.fill(ctx, "Nutzung", FieldKind.RADIO, usage, [
            f'#fahrzeugnutzung-{usage}-id-input',
            f'input[value*="{usage}"]',
        ], display=record["nutzungDesFahrzeugs"])

        return ctx

    async def fill_insurance_reason(self, ctx: RunContext) -> RunContext:
        """
        Select the insurance reason. This is the only fork of the run: the
        chosen variant decides which extra steps follow, and the form
        reconfigures itself after the selection.
        """
        reason = insurance_reason_for(ctx.record["versicherungsgrund"])
        ctx.reason = reason
        logger.info(f"Step 3: Insurance reason: {reason.label}")

        selected = await self.fill(
            ctx, "Versicherungsgrund", FieldKind.RADIO, reason.radio_value, reason.selectors,
            display=reason.label,
            error=f"Could not select insurance reason: {reason.label}",
        )
        if selected:
            await self.waiter.settle(WAIT_BRANCH)

        return ctx

    async def fill_personal_data(self, ctx: RunContext) -> RunContext:
        logger.info("Step 4: Personal data...")
        record = ctx.record

        await self.fill(ctx, "Geburtsdatum", FieldKind.DATE, record["geburtsdatumVersicherungsnehmer"], [
            '#geburtsdatum-id',
            'input[name*="geburtsdatum"]',
            'input[type="date"]',
        ])

        await self.fill(ctx, "Führerschein", FieldKind.TEXT, record["jahrDesFuehrerscheinerwerbs"], [
            '#fuehrerscheinerwerbsdatumVn23Year',
            'input[name*="fuehrerschein"]',
            'input[placeholder*="JJJJ"]',
        ])

        await self.fill_profession(ctx)
        await self.fill_driver_circle(ctx)
        return ctx

    async def fill_profession(self, ctx: RunContext) -> None:
        """Profession group appears conditionally, as a select or as radios"""
        logger.info("Attempting professional group selection...")
        await self.waiter.settle(WAIT_SECTION)

        wanted = ctx.record["berufsgruppe"].lower()
        fallback_words = ("allgemein", "sonstige", "andere")

        selects = await self.discoverer.discover(
            ["beruf", "profession", "occupation"], kinds=(FieldKind.SELECT,)
        )
        # Exact profession first, the general group only when it is not offered
        outcome = await self.select_discovered_option(
            "Berufsgruppe", selects, lambda option: option.get("text", "").lower() == wanted,
        )
        if not outcome.succeeded:
            outcome = await self.select_discovered_option(
                "Berufsgruppe", selects, option_text_contains(*fallback_words),
            )

        if not outcome.succeeded:
            radios = await self.discoverer.discover(
                ["beruf", "allgemein", "sonstige"], kinds=(FieldKind.RADIO,)
            )
            ranked = rank_candidates(
                radios,
                lambda c: c.label_text.lower() == wanted,
                lambda c: c.mentions(*fallback_words),
            )
            outcome = await self.try_candidates("Berufsgruppe", FieldKind.RADIO, ranked)

        if not outcome.succeeded:
            logger.warning("Professional group field may not be visible yet or requires different approach")
        ctx.record_outcome(outcome, f"Could not select Berufsgruppe: {ctx.record['berufsgruppe']}")

    async def fill_driver_circle(self, ctx: RunContext) -> None:
        record = ctx.record

        if not record["zusaetzlicheFahrerCheckbox"]:
            await self.fill(ctx, "Fahrerkreis", FieldKind.RADIO, "VN", [
                '#fahrerkreis-VN-id-input',
                'input[value*="VN"]',
            ], display="Nur VN")
            return

        added = await self.fill(ctx, "Zusätzliche Fahrer", FieldKind.RADIO, "BELIEBIGE", [
            '#fahrerkreis-BELIEBIGE-id-input',
            'input[value*="BELIEBIGE"]',
            'input[name="fahrerkreis-radio-group"][value="on"]',
        ], display="Ja")
        if not added:
            return

        # Youngest driver birth date only renders once additional drivers are chosen
        await self.waiter.settle(WAIT_SECTION)
        candidates = await self.discoverer.discover(
            ["fahrer", "driver", "juengst", "jüngst", "youngest"],
            kinds=(FieldKind.TEXT, FieldKind.DATE),
        )
        outcome = await self.try_candidates(
            "Jüngster Fahrer", FieldKind.DATE, candidates,
            value=record["geburtsdatumJuengsterWeitererFahrer"],
        )
        if outcome.succeeded:
            outcome = FillOutcome(outcome.name, True, record["geburtsdatumJuengsterWeitererFahrer"])
        ctx.record_outcome(outcome, "Could not fill birth date of youngest additional driver")

    async def fill_vehicle_details(self, ctx: RunContext) -> RunContext:
        logger.info("Step 5: Vehicle details...")
        record = ctx.record

        await self.fill_vehicle_owner(ctx)

        await self.fill(ctx, "Erstzulassung Monat", FieldKind.TEXT, record["erstzulassungMonat"], [
            '#erstzulassungMonth',
            'input[name="erstzulassung-name"][placeholder="MM"]',
        ])
        await self.fill(ctx, "Erstzulassung Jahr", FieldKind.TEXT, record["erstzulassungJahr"], [
            '#erstzulassungYear',
            'input[name="erstzulassung-name"][placeholder="JJJJ"]',
        ])

        await self.fill(ctx, "Neuwagen", FieldKind.CHECKBOX, record["neufahrzeugCheckbox"], [
            '#nx-checkbox-neuwagen-id',
            'input[name="neuwagen-name"]',
        ], display="Ja" if record["neufahrzeugCheckbox"] else "Nein")

        # The form expects thousands of km
        mileage = mileage_in_thousands(record["jahresfahrleistung"])
        logger.info(f"Converting annual mileage from {record['jahresfahrleistung']} to {mileage} (thousands)")
        await self.fill(ctx, "Jahresfahrleistung", FieldKind.TEXT, mileage, [
            '#jahresfahrleistung-id',
            'input[name="jahresfahrleistung-name"]',
        ], display=f"{mileage} ({record['jahresfahrleistung']} km)")

        await self.fill(ctx, "Kennzeichenart", FieldKind.RADIO, "NORMAL", [
            '#kennzeichenart-NORMAL-id-input',
        ], display="Standard")
        await self.fill(ctx, "Saisonkennzeichen", FieldKind.RADIO, "NEIN", [
            '#kennzeichenSaison-NEIN-id-input',
        ], display="Nein")

        return ctx

    async def fill_vehicle_owner(self, ctx: RunContext) -> None:
        logger.info("Looking for vehicle owner field...")
        await self.waiter.settle(WAIT_SECTION)

        wanted = ctx.record["fahrzeughalter"].lower()
        candidates = await self.discoverer.discover(
            ["halter", "owner", "selbst", "ich"], kinds=(FieldKind.RADIO,)
        )
        ranked = rank_candidates(
            candidates,
            lambda c: c.label_text.lower() == wanted,
            lambda c: c.mentions("selbst"),
            lambda c: c.mentions_word("ich", "vn"),
        )
        outcome = await self.try_candidates("Fahrzeughalter", FieldKind.RADIO, ranked)

        if outcome.succeeded:
            ctx.record_outcome(outcome)
            return

        # Known ids as a fallback
        await self.fill(ctx, "Fahrzeughalter", FieldKind.RADIO, "ICH_SELBST", [
            '#fahrzeughalter-ICH_SELBST-input',
            'input[value*="ICH_SELBST"]',
            'input[value*="VN"]',
            'input[name*="fahrzeughalter"]',
        ], display=ctx.record["fahrzeughalter"])

    async def fill_previous_insurance_data(self, ctx: RunContext) -> RunContext:
        """Only runs for an insurer switch"""
        logger.info("Step 6: Previous insurance data (Versicherer-Wechsel)...")
        record = ctx.record

        if record["erstzulassungMonat"] and record["erstzulassungJahr"]:
            await self.fill(ctx, "Zulassung Monat", FieldKind.TEXT, record["erstzulassungMonat"], [
                '#erstzulassungVnMonth',
                'input[name*="erstzulassungVn"][placeholder*="MM"]',
            ])
            await self.fill(ctx, "Zulassung Jahr", FieldKind.TEXT, record["erstzulassungJahr"], [
                '#erstzulassungVnYear',
                'input[name*="erstzulassungVn"][placeholder*="JJJJ"]',
            ])

        if record["sfrAbgebendeFahrzeugVersichertBei"]:
            await self.fill_previous_insurer(ctx)

        return ctx

    async def fill_previous_insurer(self, ctx: RunContext) -> None:
        """Exact insurer if listed, otherwise the 'other insurer' option"""
        logger.info("Handling previous insurer selection...")
        await self.waiter.settle(WAIT_SECTION)

        insurer = ctx.record["sfrAbgebendeFahrzeugVersichertBei"]
        candidates = await self.discoverer.discover(
            [insurer.lower(), "andere", "sonstige", "versicherer"], kinds=(FieldKind.RADIO,)
        )
        logger.info(f"Found {len(candidates)} insurer options for: {insurer}")

        ranked = rank_candidates(
            candidates,
            lambda c: c.mentions(insurer.lower()),
            lambda c: c.mentions("andere", "sonstige"),
        )
        if not ranked:
            ctx.errors.append(f"Could not find previous insurer option: {insurer}")
            return

        outcome = await self.try_candidates("Bisheriger Versicherer", FieldKind.RADIO, ranked)
        ctx.record_outcome(outcome, f"Could not select previous insurer: {insurer}")

    async def fill_coverage_and_dates(self, ctx: RunContext) -> RunContext:
        logger.info("Step 7: Coverage and dates...")
        record = ctx.record

        classified = await self.fill(ctx, "SF-Klasse", FieldKind.RADIO, "VORVERTRAG", [
            '#sfEinstufung-VORVERTRAG-id-input',
            'input[name="sfEinstufung-radio-group"][value="on"]',
        ], display=record["schadenfreiheitsklasseOption"])
        if classified:
            await self.waiter.settle(WAIT_SECTION)
            await self.fill_sf_classes(ctx)

        await self.fill_coverage_type(ctx)
        await self.fill_claims_history(ctx)
        await self.fill_start_date(ctx)
        return ctx

    async def fill_sf_classes(self, ctx: RunContext) -> None:
        """SF sub-classes per coverage line; rendered as selects or radios"""
        logger.info("Looking for SF class detail fields...")
        record = ctx.record

        lines = [("SF Haftpflicht", "haftpflicht", record["sfKlasseHaftpflicht"])]
        if record["gewuenschterSchutz"].lower() == "vollkasko":
            lines.append(("SF Vollkasko", "vollkasko", record["sfKlasseVollkasko"]))

        for name, line, sf_class in lines:
            # Earlier selections may have re-rendered the section; scan again
            selects = await self.discoverer.discover(
                ["sf", "schadenfreiheit", "haftpflicht", "vollkasko"], kinds=(FieldKind.SELECT,)
            )
            outcome = await self.select_discovered_option(
                name, [c for c in selects if c.mentions(line)], sf_class_option(sf_class)
            )

            if not outcome.succeeded:
                radios = await self.discoverer.discover(["sf"], kinds=(FieldKind.RADIO,))
                wanted = sf_class.lower()
                ranked = rank_candidates(
                    radios,
                    lambda c: c.mentions(wanted) and c.mentions(line),
                    lambda c: c.label_text.lower() == wanted,
                )
                outcome = await self.try_candidates(name, FieldKind.RADIO, ranked)

            ctx.record_outcome(outcome, f"Could not set {name}: {sf_class}")

    async def fill_coverage_type(self, ctx: RunContext) -> None:
        logger.info("Looking for coverage type fields...")
        wanted = ctx.record["gewuenschterSchutz"].lower()

        candidates = await self.discoverer.discover(
            ["deckung", "vollkasko", "haftpflicht", "teilkasko", "coverage"], kinds=(FieldKind.RADIO,)
        )
        ranked = rank_candidates(
            candidates,
            lambda c: c.label_text.lower() == wanted,
            lambda c: c.mentions(wanted) and not c.mentions("sf "),
        )
        outcome = await self.try_candidates("Deckung", FieldKind.RADIO, ranked)
        ctx.record_outcome(outcome, f"Could not select coverage: {ctx.record['gewuenschterSchutz']}")

    async def fill_claims_history(self, ctx: RunContext) -> None:
        logger.info("Looking for claims history fields...")
        record = ctx.record
        had_claims = record["schaedenReguliertLetzte3JahreCheckbox"]
        answer = "ja" if had_claims else "nein"

        candidates = await self.discoverer.discover(
            ["schaden", "schäden", "schaeden", "claim", "unfall"], kinds=(FieldKind.RADIO,)
        )
        ranked = rank_candidates(
            candidates,
            lambda c: c.label_text.strip().lower() == answer or c.value.lower() == answer,
            lambda c: c.mentions_word(answer),
        )
        outcome = await self.try_candidates("Schäden", FieldKind.RADIO, ranked)
        if outcome.succeeded:
            display = f"Ja ({record['anzahlRegulierterSchaeden']})" if had_claims else "Nein"
            outcome = FillOutcome(outcome.name, True, display)
        ctx.record_outcome(outcome, f"Could not answer claims question: {answer}")

    async def fill_start_date(self, ctx: RunContext) -> None:
        """
        Insurance start date. The accepted literal format is unknown, so
        every encoding is tried against every candidate until one verifies.
        """
        start_date = ctx.record["versicherungsbeginn"]
        logger.info(f"CRITICAL: Setting insurance start date: {start_date}")

        await self.waiter.settle(WAIT_BRANCH)

        candidates = await self.discoverer.discover(
            START_DATE_KEYWORDS, kinds=(FieldKind.DATE, FieldKind.TEXT), exclude=START_DATE_EXCLUDE
        )
        candidates = rank_candidates(
            candidates,
            lambda c: c.mentions("beginn", "start"),
            lambda c: True,
        )
        logger.info(f"Found {len(candidates)} potential date input fields")

        encodings = date_encodings(start_date)
        for candidate in candidates:
            logger.info(f"Attempting to fill date field: {candidate.selector}")
            for encoding in encodings:
                descriptor = FieldDescriptor(
                    "Versicherungsbeginn", (DiscoveredStrategy(candidate),), FieldKind.DATE, encoding
                )
                outcome = await self.date_writer.write(descriptor)
                if outcome.succeeded:
                    logger.info(f"Insurance start date set as '{encoding}': {outcome.observed_value}")
                    ctx.record_outcome(FillOutcome("Versicherungsbeginn", True, start_date))
                    return
                logger.info(f"Date value not registered with encoding '{encoding}'")

        logger.error(f"CRITICAL: All date field attempts failed for: {start_date}")
        ctx.errors.append(f"CRITICAL: Could not set insurance start date: {start_date}")
        await self.take_screenshot(ctx, "date-field-debug")

    async def submit_and_capture(self, ctx: RunContext) -> SubmitResult:
        logger.info("Step 8: Final submission and results capture...")
        await self.take_screenshot(ctx, "before-final-submit")

        result = SubmitResult()
        for selector in self.SUBMIT_SELECTORS:
            try:
                button = await self.locator.resolve(SelectorStrategy(selector))
                if not button or not await button.is_enabled():
                    continue
                logger.info(f"Found submit button: {selector}")
                await button.click()
                result.submitted = True
                break
            except PlaywrightError as e:
                logger.warning(f"Could not click submit button {selector}: {e}")
                continue

        if not result.submitted:
            logger.error("No submit control found")
            ctx.errors.append(f"Could not find submit control (tried: {', '.join(self.SUBMIT_SELECTORS)})")
            return result

        await self.waiter.settle(WAIT_RESULTS)
        await self.take_screenshot(ctx, "quote-results")

        page_content = await self.page.inner_text('body')
        result.has_results = any(marker in page_content for marker in ("Tarif", "€", "Angebot"))
        result.has_errors = "Fehler" in page_content or "Error" in page_content

        result.quote = await capture_quote(self.page, self.waiter)
        result.has_results = result.has_results or result.quote.captured
        return result

    # ============ Pipeline ============

    async def run_step(self, ctx: RunContext, step_name: str) -> RunContext:
        step = getattr(self, step_name)
        ctx = await step(ctx)
        ctx.steps_run.append(step_name)
        await self.take_screenshot(ctx, f"step-{self.STEP_CHECKPOINTS[step_name]}")
        return ctx

    async def fill_form(self, ctx: RunContext) -> SubmitResult:
        """Run all steps in order; the insurance reason decides the middle part"""
        logger.info("Starting form filling with validation...")

        for step_name in self.STEPS_BEFORE_BRANCH:
            ctx = await self.run_step(ctx, step_name)

        for step_name in ctx.reason.sub_steps:
            logger.info(f"Processing {ctx.reason.label} specific step: {step_name}")
            ctx = await self.run_step(ctx, step_name)

        for step_name in self.STEPS_AFTER_BRANCH:
            ctx = await self.run_step(ctx, step_name)

        result = await self.submit_and_capture(ctx)
        await self.take_screenshot(ctx, "step-final-results")
        return result

    @staticmethod
    def decide_status(ctx: RunContext, submit: SubmitResult) -> RunStatus:
        if not submit.submitted or submit.has_errors:
            return RunStatus.FAILED
        missing = [name for name in CRITICAL_FIELDS if ctx.filled(name) is None]
        if missing:
            logger.warning(f"Submitted without critical fields: {missing}")
            return RunStatus.FAILED
        return RunStatus.SUCCESS

    async def run(self, raw_input=None) -> RunReport:
        """
        Complete run: open form, fill, submit, capture, report

        Returns:
            RunReport: finalized and already handed to the sink

        Raises:
            QuoteAutomationError: on any unexpected error (an ERROR report is
                still written first)
        """
        report = RunReport(url=self.url, run_id=self.run_id)
        ctx = RunContext(record=prepare_form_data(raw_input))
        report.input_data = ctx.record

        try:
            if self.page is None:
                await self.init_browser()

            await self.navigate()
            await self.handle_cookie_notification()
            await self.take_screenshot(ctx, "allianz-form-start")

            report.form_structure = await self.analyze_form_structure()
            submit = await self.fill_form(ctx)

        except Exception as e:
            logger.error(f"Error processing Allianz form: {e}", exc_info=True)
            if self.page is not None:
                await self.take_screenshot(ctx, "form-filling-error")
            ctx.errors.append(str(e))
            report.finalize(RunStatus.ERROR, ctx, error=str(e))
            self.sink.push(report)
            raise QuoteAutomationError(f"Run {self.run_id} failed: {e}") from e

        status = self.decide_status(ctx, submit)
        report.finalize(status, ctx, submit)
        self.sink.push(report)

        logger.info(
            f"Run completed - Status: {status.value}, "
            f"{len(ctx.filled_fields)} fields filled, {len(ctx.errors)} errors"
        )
        return report

    async def close(self) -> None:
        """Close browser and save trace"""
        try:
            if ENABLE_TRACING and self.trace_path and self.context:
                try:
                    logger.info(f"Saving trace to: {self.trace_path}")
                    await self.context.tracing.stop(path=str(self.trace_path))
                except Exception as e:
                    logger.error(f"Error saving trace: {e}")

            if self.context:
                await self.context.close()
            if self.browser:
                await self.browser.close()
            if self.playwright:
                await self.playwright.stop()
            logger.info("Browser closed")
        except Exception as e:
            logger.error(f"Error closing browser: {e}")


async def run_quote(raw_input=None, run_id: Optional[str] = None, sink: Optional[ResultSink] = None) -> RunReport:
    """Launch a browser, run one quote and always close the browser"""
    quote_handler = AllianzQuote(run_id=run_id, sink=sink)
    try:
        return await quote_handler.run(raw_input)
    finally:
        await quote_handler.close()


if __name__ == "__main__":
    asyncio.run(run_quote())
