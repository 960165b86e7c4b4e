"""
Input record preparation for the Allianz quote form

Every key the form steps consume gets a documented default so a missing or
malformed input degrades to a complete record instead of failing.
"""
import json
import logging

from quote_models import INSURANCE_REASONS, NEW_OR_REPLACEMENT

logger = logging.getLogger(__name__)


# Logical field -> default value
FORM_DEFAULTS = {
    # Vehicle identification
    "hsn": "0005",
    "tsn": "DGT",

    # Basic form selections
    "versicherungsgrund": NEW_OR_REPLACEMENT,
    "postleitzahl": "80331",
    "nutzungDesFahrzeugs": "Privat",

    # Personal data
    "geburtsdatumVersicherungsnehmer": "20.01.1989",
    "jahrDesFuehrerscheinerwerbs": "2012",
    "berufsgruppe": "Allgemeine Berufsgruppen (Sonstige)",

    # Vehicle data
    "fahrzeughalter": "Ich selbst",
    "erstzulassungMonat": "02",
    "erstzulassungJahr": "2023",
    "neufahrzeugCheckbox": False,
    "jahresfahrleistung": "20000",

    # Additional drivers
    "zusaetzlicheFahrerCheckbox": True,
    "artZusaetzlicheFahrer": "Ehe-/Lebenspartner",
    "geburtsdatumJuengsterWeitererFahrer": "20.01.1989",

    # Insurance history (used by the insurer switch flow)
    "schadenfreiheitsklasseOption": "SF-Klasse aus Vorvertrag übernehmen",
    "sfrAbgebendeFahrzeugVersichertBei": "Anderer Versicherer",
    "sfKlasseHaftpflicht": "SF 2",
    "sfKlasseVollkasko": "SF 0",

    # Claims
    "schaedenReguliertLetzte3JahreCheckbox": True,
    "anzahlRegulierterSchaeden": "2",
    "schaden1DatumMonat": "01",
    "schaden1DatumJahr": "2023",
    "schaden1Art": "Haftpflicht",

    # Coverage and dates
    "gewuenschterSchutz": "Vollkasko",
    "versicherungsbeginn": "01.06.2025",
}

BOOLEAN_FIELDS = {
    "neufahrzeugCheckbox",
    "zusaetzlicheFahrerCheckbox",
    "schaedenReguliertLetzte3JahreCheckbox",
}

TRUE_STRINGS = {"true", "ja", "yes", "1", "on"}
FALSE_STRINGS = {"false", "nein", "no", "0", "off"}


def _coerce_input(raw) -> dict:
    """Turn whatever arrived as input into a dict, or an empty one"""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (ValueError, TypeError):
            logger.warning("Could not parse input string as JSON, using defaults")
            return {}

    if not isinstance(raw, dict):
        logger.warning("No valid input data provided, using defaults")
        return {}

    return raw


def _resolve_bool(key: str, value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
    if value is not None:
        logger.warning(f"Invalid boolean for '{key}': {value!r}, using default")
    return FORM_DEFAULTS[key]


def _resolve_str(key: str, value) -> str:
    if value is None or isinstance(value, (dict, list, bool)):
        return FORM_DEFAULTS[key]
    text = str(value).strip()
    return text or FORM_DEFAULTS[key]


def prepare_form_data(raw=None) -> dict:
    """
    Resolve an input record against FORM_DEFAULTS.

    Accepts None, a JSON string, or a dict. The desired policy start date may
    arrive as `desiredStartDate` and takes precedence over
    `versicherungsbeginn`. Preparing an already-prepared record returns an
    equal record.
    """
    data = dict(_coerce_input(raw))

    if data.get("desiredStartDate"):
        data["versicherungsbeginn"] = data["desiredStartDate"]

    form_data = {}
    for key in FORM_DEFAULTS:
        value = data.get(key)
        if key in BOOLEAN_FIELDS:
            form_data[key] = _resolve_bool(key, value)
        else:
            form_data[key] = _resolve_str(key, value)

    if form_data["versicherungsgrund"] not in INSURANCE_REASONS:
        logger.warning(
            f"Unknown versicherungsgrund '{form_data['versicherungsgrund']}', "
            f"falling back to '{FORM_DEFAULTS['versicherungsgrund']}'"
        )
        form_data["versicherungsgrund"] = FORM_DEFAULTS["versicherungsgrund"]

    unknown = sorted(set(data) - set(FORM_DEFAULTS) - {"desiredStartDate"})
    if unknown:
        logger.debug(f"Ignoring unknown input keys: {unknown}")

    logger.info(f"Form data prepared: {len(form_data)} fields")
    return form_data


def mileage_in_thousands(jahresfahrleistung: str) -> str:
    """The form asks for annual mileage in thousands of km"""
    try:
        km = int(str(jahresfahrleistung).replace(".", "").replace(" ", ""))
    except ValueError:
        logger.warning(f"Invalid jahresfahrleistung '{jahresfahrleistung}', using default")
        km = int(FORM_DEFAULTS["jahresfahrleistung"])
    # half-up rounding, matching the form's own hint text
    return str(int(km / 1000 + 0.5))


def date_encodings(german_date: str) -> list:
    """
    Literal encodings to try for a DD.MM.YYYY date: dotted, ISO, slashed, dashed
    """
    encodings = [german_date]

    parts = german_date.split(".")
    if len(parts) == 3 and all(p.strip().isdigit() for p in parts):
        day, month, year = (p.strip() for p in parts)
        encodings.append(f"{year}-{month.zfill(2)}-{day.zfill(2)}")

    encodings.append(german_date.replace(".", "/"))
    encodings.append(german_date.replace(".", "-"))

    unique = []
    for encoding in encodings:
        if encoding and encoding not in unique:
            unique.append(encoding)
    return unique
