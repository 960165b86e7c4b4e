"""
Quote result extraction

The result page markup is not stable, so extraction is keyword and pattern
based and deliberately over-inclusive. The browser side only collects raw
text; matching and aggregation happen in summarize_results().
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict

from playwright.async_api import Error as PlaywrightError, Page

from config import WAIT_BRANCH
from form_engine import StabilizationWaiter
from quote_models import QuoteResult

logger = logging.getLogger(__name__)


PRICE_PATTERNS = [
    re.compile(r"\d+[,.]?\d*\s*€"),
    re.compile(r"€\s*\d+[,.]?\d*"),
    re.compile(r"\d+[,.]?\d*\s*Euro"),
    re.compile(r"\d+[,.]?\d*\s*EUR"),
]

PRICE_SELECTORS = [
    '[class*="price"]', '[class*="kosten"]', '[class*="beitrag"]',
    '[class*="tarif"]', '[class*="quote"]', '[class*="angebot"]',
    '[class*="summe"]', '[class*="gesamt"]', '[class*="monat"]',
    '[data-price]', '[data-cost]', '[data-tariff]',
]

CARD_SELECTORS = [
    '[class*="quote"]', '[class*="tarif"]', '[class*="angebot"]',
    '[class*="card"]', '[class*="product"]', '[class*="package"]',
    '[class*="option"]', '[class*="versicherung"]',
]

COVERAGE_SELECTORS = [
    '[class*="coverage"]', '[class*="deckung"]', '[class*="leistung"]',
    '[class*="schutz"]', '[class*="benefit"]', '[class*="feature"]',
]

RESULT_INDICATOR_SELECTORS = [
    '[class*="result"]', '[class*="quote"]', '[class*="berechnung"]',
    '[class*="angebot"]', '[id*="result"]', '[id*="quote"]',
]

RESULT_KEYWORDS = ("€", "Euro", "Tarif", "Angebot")

# Collects raw text of candidate elements; no matching is done in the page
COLLECT_RESULTS_SCRIPT = '''
    (sel) => {
        const text = (el) => (el && el.textContent ? el.textContent.trim() : '');
        const collect = (selectors, build) => {
            const out = [];
            selectors.forEach(selector => {
                document.querySelectorAll(selector).forEach((el, index) => {
                    out.push(Object.assign({ selector: selector, index: index }, build(el)));
                });
            });
            return out;
        };

        return {
            prices: collect(sel.prices, el => ({
                text: text(el),
                context: text(el.closest('[class*="card"], [class*="box"], [class*="container"]')).substring(0, 200)
            })),
            cards: collect(sel.cards, el => ({
                title: text(el.querySelector('h1, h2, h3, h4, [class*="title"], [class*="name"]')),
                price: text(el.querySelector('[class*="price"], [class*="kosten"], [class*="beitrag"]')),
                description: text(el.querySelector('[class*="description"], [class*="detail"], p')),
                fullText: text(el).substring(0, 300)
            })),
            coverage: collect(sel.coverage, el => ({ text: text(el) })),
            resultIndicators: sel.indicators.filter(s => document.querySelector(s)).length,
            bodyText: document.body ? document.body.textContent : '',
            url: window.location.href,
            title: document.title,
            hasVisibleContent: !!document.body && document.body.offsetWidth > 0 && document.body.offsetHeight > 0
        };
    }
'''


def find_prices(text: str) -> list:
    matches = []
    for pattern in PRICE_PATTERNS:
        matches.extend(pattern.findall(text))
    return matches


def summarize_results(snapshot: Dict[str, Any]) -> QuoteResult:
    """Turn a raw page snapshot into a QuoteResult"""
    pricing = {}
    for element in snapshot.get("prices", []):
        text = (element.get("text") or "").strip()
        if not text:
            continue
        prices = find_prices(text)
        if not prices:
            continue
        key = f"{element['selector'].strip('[]')}_{element['index']}"
        pricing[key] = {
            "text": text,
            "price": prices[-1],
            "allPrices": prices,
            "element": element["selector"],
            "fullContext": element.get("context", ""),
        }

    tariffs = []
    for card in snapshot.get("cards", []):
        title = (card.get("title") or "").strip()
        price = (card.get("price") or "").strip()
        if not title and not price:
            continue
        tariffs.append({
            "index": card["index"],
            "title": title,
            "price": price,
            "description": (card.get("description") or "").strip(),
            "fullText": card.get("fullText", ""),
            "selector": card["selector"],
        })

    coverage = {}
    for element in snapshot.get("coverage", []):
        text = (element.get("text") or "").strip()
        if len(text) > 10:
            coverage[f"{element['selector']}_{element['index']}"] = text[:150]

    body_text = snapshot.get("bodyText") or ""
    current_url = snapshot.get("url") or ""
    euro_snippets = [
        line.strip()[:100]
        for line in re.findall(r"[^\n]*€[^\n]*", body_text)[:10]
    ]

    has_results = (
        snapshot.get("resultIndicators", 0) > 0
        or bool(pricing)
        or bool(tariffs)
        or any(keyword in body_text for keyword in RESULT_KEYWORDS)
    )

    summary = {
        "hasResultsPage": has_results,
        "priceElementsFound": len(pricing),
        "tariffCardsFound": len(tariffs),
        "coverageElementsFound": len(coverage),
        "pageContainsEuro": "€" in body_text,
        "pageContainsTarif": "Tarif" in body_text,
        "urlIndicatesResults": "result" in current_url or "quote" in current_url,
        "currentUrl": current_url,
    }

    return QuoteResult(
        captured=has_results,
        tariffs=tariffs,
        pricing=pricing,
        coverage=coverage,
        euro_snippets=euro_snippets,
        summary=summary,
        debug={
            "pageTitle": snapshot.get("title", ""),
            "currentUrl": current_url,
            "bodyTextLength": len(body_text),
            "hasVisibleContent": bool(snapshot.get("hasVisibleContent")),
        },
    )


async def capture_quote(page: Page, waiter: StabilizationWaiter) -> QuoteResult:
    """Scan the result page once; failures give an uncaptured result"""
    logger.info("Capturing quote data...")

    try:
        await waiter.settle(WAIT_BRANCH)
        snapshot = await page.evaluate(COLLECT_RESULTS_SCRIPT, {
            "prices": PRICE_SELECTORS,
            "cards": CARD_SELECTORS,
            "coverage": COVERAGE_SELECTORS,
            "indicators": RESULT_INDICATOR_SELECTORS,
        })
    except PlaywrightError as e:
        logger.error(f"Error capturing quote data: {e}")
        return QuoteResult(captured=False, error=str(e), timestamp=datetime.now().isoformat())

    result = summarize_results(snapshot)
    logger.info(
        f"Quote captured={result.captured}: {len(result.pricing)} prices, "
        f"{len(result.tariffs)} tariffs, {len(result.coverage)} coverage items"
    )
    return result
