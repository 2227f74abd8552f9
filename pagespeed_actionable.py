# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests",
#   "pandas",
# ]
# ///
"""PageSpeed Actionable Report CLI Tool.

Fetches Google PageSpeed Insights results and turns the raw Lighthouse audit
dump into a prioritized, framework-aware report: detailed insights, a
severity-ranked diagnostics table, key opportunities with ordered remediation
steps, and an executive summary. Reports are printed to the terminal or
written as JSON/CSV for CI pipelines.
"""

from __future__ import annotations

import argparse
import json
import math
import os
import re
import sys
import threading
import time
import tomllib
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from urllib.parse import urlparse

import pandas as pd
import requests

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"

VALID_STRATEGIES = ("mobile", "desktop", "both")
VALID_CATEGORIES = ("performance", "accessibility", "best-practices", "seo")
VALID_OUTPUT_FORMATS = ("text", "json", "csv", "both")

DEFAULT_DELAY = 1.5
DEFAULT_WORKERS = 4
DEFAULT_STRATEGY = "mobile"
DEFAULT_OUTPUT_FORMAT = "text"
DEFAULT_OUTPUT_DIR = "./reports"
DEFAULT_CATEGORIES = ["performance", "accessibility", "best-practices", "seo"]
DEFAULT_TIMEOUT = 60

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0
RETRYABLE_STATUS_CODES = {429, 500, 503}

CONFIG_FILENAMES = ["pagespeed.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "pagespeed",
]

# Core Web Vitals reduced from Lighthouse: (result_key, audit_id)
CORE_WEB_VITALS = [
    ("lcp", "largest-contentful-paint"),
    ("fcp", "first-contentful-paint"),
    ("cls", "cumulative-layout-shift"),
    ("tbt", "total-blocking-time"),
    ("si", "speed-index"),
    ("tti", "interactive"),
]

# Category scores: (lighthouse_category_id, result_key)
CATEGORY_SCORES = [
    ("performance", "performance"),
    ("accessibility", "accessibility"),
    ("best-practices", "best_practices"),
    ("seo", "seo"),
]

# Audits surfaced as performance improvement opportunities
OPPORTUNITY_AUDITS = [
    "render-blocking-resources",
    "unused-css-rules",
    "unused-javascript",
    "modern-image-formats",
    "offscreen-images",
    "unminified-css",
    "unminified-javascript",
    "efficient-animated-content",
    "uses-optimized-images",
    "uses-responsive-images",
    "server-response-time",
    "uses-text-compression",
    "uses-rel-preconnect",
    "uses-rel-preload",
    "font-display",
    "third-party-summary",
]

# Audits surfaced as diagnostic information
DIAGNOSTIC_AUDITS = [
    "mainthread-work-breakdown",
    "bootup-time",
    "dom-size",
    "critical-request-chains",
    "network-requests",
    "network-rtt",
    "network-server-latency",
    "long-tasks",
    "non-composited-animations",
    "unsized-images",
    "viewport",
    "no-document-write",
    "js-libraries",
]

# Hostname substring -> third-party entity name. First match wins, in list order,
# so every host containing "google" resolves to "Google".
THIRD_PARTY_PATTERNS = [
    ("facebook", "Facebook"),
    ("fb.com", "Facebook"),
    ("fbcdn", "Facebook"),
    ("google", "Google"),
    ("googleapis", "Google APIs"),
    ("gstatic", "Google Static"),
    ("googletagmanager", "Google Tag Manager"),
    ("google-analytics", "Google Analytics"),
    ("doubleclick", "DoubleClick"),
    ("twitter", "Twitter"),
    ("twimg", "Twitter"),
    ("linkedin", "LinkedIn"),
    ("trustedform", "TrustedForm"),
    ("leadid", "LeadID"),
    ("jornaya", "Jornaya"),
    ("cloudflare", "Cloudflare"),
    ("cloudfront", "CloudFront"),
    ("amazonaws", "AWS"),
    ("cdn", "CDN"),
    ("jquery", "jQuery"),
    ("unpkg", "unpkg"),
    ("cdnjs", "cdnjs"),
    ("bootstrapcdn", "Bootstrap CDN"),
]

# Entity-name keywords per third-party category, checked in this order.
# "ad" matches inside names such as "LeadID", which therefore land in advertising.
THIRD_PARTY_CATEGORY_KEYWORDS = [
    ("analytics", ("analytics", "tag manager")),
    ("social", ("facebook", "twitter", "linkedin")),
    ("advertising", ("ad", "doubleclick")),
    ("cdn", ("cdn", "cloudflare", "cloudfront")),
    ("fonts", ("font",)),
    ("lead-tracking", ("trustedform", "leadid", "jornaya")),
]

# Image audits: (audit_id, issue_type, recommendation), in de-duplication order
IMAGE_AUDITS = [
    ("modern-image-formats", "format", "Convert to WebP or AVIF format"),
    ("uses-responsive-images", "oversized", "Serve properly sized images for viewport"),
    ("offscreen-images", "offscreen", "Lazy-load offscreen images with loading='lazy'"),
    ("uses-optimized-images", "unoptimized", "Compress image or use better optimization"),
]

# Share of (LCP - FCP) attributed to loading the LCP resource when no measured
# breakdown is available.
LCP_RESOURCE_LOAD_SHARE = 0.6

LCP_TEXT_TAGS = ("h1", "h2", "h3", "p", "span", "div")
LCP_IMAGE_URL_PATTERN = re.compile(r"\.(jpg|jpeg|png|gif|webp|avif|svg)", re.IGNORECASE)
SNIPPET_TAG_PATTERN = re.compile(r"^\s*<\s*([a-zA-Z][a-zA-Z0-9-]*)")

LCP_GOOD_MS = 2500
LCP_POOR_MS = 4000

SEVERITY_ORDER = {"critical": 0, "serious": 1, "moderate": 2, "minor": 3}

# Opportunity applicability gates
JS_WASTE_THRESHOLD = 100000
IMAGE_WASTE_THRESHOLD = 50000
THIRD_PARTY_BLOCKING_THRESHOLD = 250
RENDER_BLOCKING_THRESHOLD = 200

MAX_DIAGNOSTIC_ITEMS = 10
MAX_NEXT_STEPS = 5

# CI threshold checks
THRESHOLD_EXIT_CODE = 2

DEFAULT_THRESHOLDS = {
    "performance": 50,
    "lcp": 4000,
    "fcp": 3000,
    "cls": 0.25,
    "tbt": 600,
}

# Metric thresholds: (threshold_key, label, metric_key); exceeded when value > threshold
METRIC_THRESHOLDS = [
    ("lcp", "LCP", "lcp"),
    ("fcp", "FCP", "fcp"),
    ("cls", "CLS", "cls"),
    ("tbt", "TBT", "tbt"),
]

NEXT_JS_FRAMEWORK = "next"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PageSpeedError(Exception):
    """Raised when a PageSpeed API request fails after all retries."""


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        print(f"Error: malformed config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    except OSError as exc:
        print(f"Error: cannot read config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)


def load_thresholds(config: dict) -> dict:
    """Return CI thresholds: built-in defaults overridden by the config's [thresholds] table."""
    thresholds = dict(DEFAULT_THRESHOLDS)
    thresholds.update(config.get("thresholds", {}))
    return thresholds


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            print(
                f"Error: profile '{profile_name}' not found in config. Available: {available}",
                file=sys.stderr,
            )
            sys.exit(1)
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "api_key": "api_key",
        "strategy": "strategy",
        "categories": "categories",
        "context": "context",
        "output_format": "output_format",
        "output_dir": "output_dir",
        "workers": "workers",
        "delay": "delay",
        "verbose": "verbose",
        "ci": "ci",
        "include_raw": "include_raw",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if not getattr(args, "api_key", None):
        env_key = os.environ.get("PAGESPEED_API_KEY")
        if env_key:
            args.api_key = env_key

    return args


def load_project_context(context_path: str | None) -> dict | None:
    """Load a project context (framework, tooling, dependencies) from a JSON file.

    The file is produced by an external stack detector; absent keys are filled
    with empty defaults so downstream code can rely on the full shape.
    """
    if not context_path:
        return None

    path = Path(context_path)
    if not path.is_file():
        print(f"Error: project context file not found: {context_path}", file=sys.stderr)
        sys.exit(1)
    try:
        with open(path) as fh:
            raw = json.load(fh)
    except json.JSONDecodeError as exc:
        print(f"Error: malformed project context file {context_path}: {exc}", file=sys.stderr)
        sys.exit(1)

    if not isinstance(raw, dict):
        print(f"Error: project context must be a JSON object, got {type(raw).__name__}", file=sys.stderr)
        sys.exit(1)

    dependencies = raw.get("dependencies") or {}
    return {
        "framework": raw.get("framework"),
        "package_manager": raw.get("package_manager", "unknown"),
        "build_tool": raw.get("build_tool"),
        "ui_library": raw.get("ui_library"),
        "css_solution": raw.get("css_solution"),
        "is_typescript": bool(raw.get("is_typescript", False)),
        "image_optimization": raw.get("image_optimization"),
        "analytics": list(raw.get("analytics") or []),
        "third_party_integrations": list(raw.get("third_party_integrations") or []),
        "dependencies": {
            "production": list(dependencies.get("production") or []),
            "development": list(dependencies.get("development") or []),
            "total": dependencies.get("total", 0),
        },
    }


def _framework_name(context: dict | None) -> str | None:
    """Return the detected framework name from a project context, if any."""
    if not context:
        return None
    framework = context.get("framework")
    if not framework:
        return None
    return framework.get("name")


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def _add_output_arguments(subparser: argparse.ArgumentParser) -> None:
    """Output and CI flags shared by analyze and report."""
    subparser.add_argument("--context", dest="context", action=TrackingAction, default=None, help="Project context JSON file (framework, tooling)")
    subparser.add_argument("--output-format", dest="output_format", action=TrackingAction, default=DEFAULT_OUTPUT_FORMAT, choices=VALID_OUTPUT_FORMATS, help="Output format: text, json, csv, or both (json + csv)")
    subparser.add_argument("-o", "--output", dest="output", action=TrackingAction, default=None, help="Explicit output file path (overrides auto-naming)")
    subparser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory for auto-named output files")
    subparser.add_argument("--include-raw", dest="include_raw", action=TrackingStoreTrueAction, default=False, help="Keep the raw API response in JSON output")
    subparser.add_argument("--ci", dest="ci", action=TrackingStoreTrueAction, default=False, help=f"CI mode: exit {THRESHOLD_EXIT_CODE} on threshold violations")


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="pagespeed-actionable",
        description="Actionable PageSpeed Insights reports",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--api-key", dest="api_key", action=TrackingAction, default=None, help="Google API key (or set PAGESPEED_API_KEY env var)")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose output to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- analyze ---
    analyze_parser = subparsers.add_parser("analyze", help="Fetch PageSpeed results and build actionable reports")
    analyze_parser.add_argument("urls", nargs="+", help="URLs to analyze")
    analyze_parser.add_argument("-s", "--strategy", dest="strategy", action=TrackingAction, default=DEFAULT_STRATEGY, choices=VALID_STRATEGIES, help="Strategy: mobile, desktop, or both")
    analyze_parser.add_argument("--categories", dest="categories", action=TrackingAction, nargs="+", default=DEFAULT_CATEGORIES, choices=VALID_CATEGORIES, help="Lighthouse categories")
    analyze_parser.add_argument("-d", "--delay", dest="delay", action=TrackingAction, type=float, default=DEFAULT_DELAY, help="Seconds between API requests")
    analyze_parser.add_argument("-w", "--workers", dest="workers", action=TrackingAction, type=int, default=DEFAULT_WORKERS, help="Concurrent workers (1 = sequential)")
    _add_output_arguments(analyze_parser)

    # --- report ---
    report_parser = subparsers.add_parser("report", help="Build an actionable report from a saved PageSpeed JSON response")
    report_parser.add_argument("input_file", help="Path to a raw PageSpeed Insights API response (JSON)")
    report_parser.add_argument("--url", dest="url", action=TrackingAction, default=None, help="Analyzed URL (defaults to the response's finalUrl)")
    report_parser.add_argument("-s", "--strategy", dest="strategy", action=TrackingAction, default=DEFAULT_STRATEGY, choices=("mobile", "desktop"), help="Strategy the response was captured with")
    _add_output_arguments(report_parser)

    return parser


# ---------------------------------------------------------------------------
# URL Handling
# ---------------------------------------------------------------------------


def validate_url(url: str) -> str | None:
    """Validate and normalize a URL. Returns the URL or None if invalid."""
    url = url.strip()
    if not url or url.startswith("#"):
        return None

    if not url.startswith(("http://", "https://")):
        url = "https://" + url

    parsed = urlparse(url)
    if not parsed.netloc or "." not in parsed.netloc:
        return None
    return url


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


def fetch_pagespeed_result(
    url: str,
    strategy: str,
    api_key: str | None = None,
    categories: list[str] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> dict:
    """Fetch the raw PageSpeed Insights response for a single URL + strategy.

    Retries on 429/500/503 with exponential backoff. Raises PageSpeedError for
    any other HTTP failure, an error body, or a response without Lighthouse data.
    """
    # Repeated query params: the API expects one "category" per value
    category_list = categories or DEFAULT_CATEGORIES
    params: dict[str, str | list[str]] = {
        "url": url,
        "strategy": strategy.upper(),
        "category": [category.upper().replace("-", "_") for category in category_list],
    }
    if api_key:
        params["key"] = api_key

    last_error: Exception | None = None
    for attempt in range(MAX_RETRIES + 1):
        try:
            response = requests.get(
                PAGESPEED_API_URL,
                params=params,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            last_error = exc
            if attempt < MAX_RETRIES:
                time.sleep(RETRY_BASE_DELAY * (2**attempt))
                continue
            break

        if response.status_code == 200:
            data = response.json()
            if "error" in data:
                message = data["error"].get("message", "unknown error")
                raise PageSpeedError(f"API error for {url} ({strategy}): {message}")
            if "lighthouseResult" not in data:
                raise PageSpeedError(f"No lighthouseResult in response for {url} ({strategy})")
            return data

        if response.status_code in RETRYABLE_STATUS_CODES and attempt < MAX_RETRIES:
            retry_after = response.headers.get("Retry-After")
            if retry_after and response.status_code == 429:
                wait_time = float(retry_after)
            else:
                wait_time = RETRY_BASE_DELAY * (2**attempt)
            last_error = PageSpeedError(f"HTTP {response.status_code} for {url} ({strategy})")
            time.sleep(wait_time)
            continue

        error_detail = ""
        try:
            error_body = response.json()
            error_detail = error_body.get("error", {}).get("message", response.text[:200])
        except (ValueError, KeyError, AttributeError):
            error_detail = response.text[:200]
        raise PageSpeedError(
            f"HTTP {response.status_code} for {url} ({strategy}): {error_detail}"
        )

    raise PageSpeedError(f"Failed after {MAX_RETRIES + 1} attempts for {url} ({strategy}): {last_error}")


# ---------------------------------------------------------------------------
# Result Extraction
# ---------------------------------------------------------------------------


def _number(value: object) -> float | int:
    """Return value when it is a real number, else 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


def _size(value: object) -> float | int:
    """Return a non-negative magnitude (bytes or ms) from a loosely typed field."""
    return max(0, _number(value))


def _as_dict(value: object) -> dict:
    """Return value when it is a dict, else an empty dict."""
    return value if isinstance(value, dict) else {}


def _text(value: object) -> str | None:
    """Return value when it is a non-empty string, else None."""
    return value if isinstance(value, str) and value else None


def _sub_items(item: dict) -> list[dict]:
    """Return the dict entries of an item's subItems.items list."""
    sub_items = _as_dict(item.get("subItems")).get("items")
    if not isinstance(sub_items, list):
        return []
    return [sub for sub in sub_items if isinstance(sub, dict)]


def _audit_items(audits: dict, audit_id: str) -> list[dict]:
    """Return the details.items list of an audit, or [] when any level is missing or malformed."""
    details = _as_dict(_as_dict(audits.get(audit_id)).get("details"))
    items = details.get("items")
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def extract_scores(lighthouse: dict) -> dict:
    """Extract 0-100 category scores; None where a category was not run."""
    categories = _as_dict(lighthouse.get("categories"))
    scores: dict[str, int | None] = {}
    for category_id, key in CATEGORY_SCORES:
        score = _as_dict(categories.get(category_id)).get("score")
        scores[key] = _round_half_up(_number(score) * 100) if score is not None else None
    return scores


def extract_metric_value(audit: dict | None) -> dict:
    """Reduce a metric audit to value, display string and rating."""
    if not audit or not isinstance(audit, dict):
        return {"value": 0, "display_value": "N/A", "rating": "poor"}

    value = audit.get("numericValue")
    display_value = audit.get("displayValue")
    score = _number(audit.get("score"))

    if score >= 0.9:
        rating = "good"
    elif score >= 0.5:
        rating = "needs-improvement"
    else:
        rating = "poor"

    return {
        "value": _number(value),
        "display_value": display_value if isinstance(display_value, str) else "N/A",
        "rating": rating,
    }


def extract_core_web_vitals(lighthouse: dict) -> dict:
    """Extract the lab metrics used throughout the report."""
    audits = _as_dict(lighthouse.get("audits"))
    return {key: extract_metric_value(audits.get(audit_id)) for key, audit_id in CORE_WEB_VITALS}


def extract_lcp_element(lighthouse: dict) -> dict | None:
    """Extract the LCP element from the largest-contentful-paint-element audit.

    Handles both the flat table shape and the newer list-of-tables shape.
    """
    audits = _as_dict(lighthouse.get("audits"))
    items = _audit_items(audits, "largest-contentful-paint-element")
    if not items:
        return None

    item = items[0]
    if "node" not in item and isinstance(item.get("items"), list) and item["items"]:
        item = item["items"][0]
        if not isinstance(item, dict):
            return None
    node = _as_dict(item.get("node"))

    snippet = _text(node.get("snippet"))
    tag_name = None
    if snippet:
        tag_match = SNIPPET_TAG_PATTERN.match(snippet)
        if tag_match:
            tag_name = tag_match.group(1).upper()
    if tag_name is None:
        tag_name = _text(node.get("nodeLabel")) or "Unknown"

    lcp_image_items = _audit_items(audits, "prioritize-lcp-image")
    lcp_url = _text(lcp_image_items[0].get("url")) if lcp_image_items else None

    return {
        "tag_name": tag_name,
        "selector": node.get("selector", ""),
        "url": lcp_url,
        "node_path": node.get("path", ""),
        "snippet": snippet,
    }


def extract_opportunities(lighthouse: dict) -> list[dict]:
    """Extract failing opportunity audits, largest time savings first."""
    audits = _as_dict(lighthouse.get("audits"))
    opportunities = []
    for audit_id in OPPORTUNITY_AUDITS:
        audit = audits.get(audit_id)
        if not isinstance(audit, dict) or not audit or audit.get("score") == 1 or audit.get("scoreDisplayMode") == "notApplicable":
            continue
        details = _as_dict(audit.get("details"))
        opportunities.append({
            "id": audit_id,
            "title": audit.get("title", audit_id),
            "description": audit.get("description", ""),
            "savings_ms": details.get("overallSavingsMs"),
            "savings_bytes": details.get("overallSavingsBytes"),
            "score": audit.get("score"),
        })
    return sorted(opportunities, key=lambda opp: _number(opp["savings_ms"]), reverse=True)


def extract_diagnostics(lighthouse: dict) -> list[dict]:
    """Extract applicable diagnostic audits in their fixed order."""
    audits = _as_dict(lighthouse.get("audits"))
    diagnostics = []
    for audit_id in DIAGNOSTIC_AUDITS:
        audit = audits.get(audit_id)
        if not isinstance(audit, dict) or not audit or audit.get("scoreDisplayMode") == "notApplicable":
            continue
        diagnostics.append({
            "id": audit_id,
            "title": audit.get("title", audit_id),
            "description": audit.get("description", ""),
            "display_value": audit.get("displayValue"),
            "score": audit.get("score"),
        })
    return diagnostics


def build_performance_result(api_response: dict, url: str, strategy: str, include_raw: bool = False) -> dict:
    """Reduce a raw PageSpeed API response to a PerformanceResult dict."""
    lighthouse = _as_dict(api_response.get("lighthouseResult"))
    result = {
        "url": url,
        "strategy": strategy,
        "timestamp": api_response.get("analysisUTCTimestamp") or lighthouse.get("fetchTime"),
        "scores": extract_scores(lighthouse),
        "metrics": extract_core_web_vitals(lighthouse),
        "lcp_element": extract_lcp_element(lighthouse),
        "opportunities": extract_opportunities(lighthouse),
        "diagnostics": extract_diagnostics(lighthouse),
        "insights": extract_detailed_insights(_as_dict(lighthouse.get("audits")), url),
        "field_data": api_response.get("loadingExperience"),
    }
    if include_raw:
        result["raw_response"] = api_response
    return result


# ---------------------------------------------------------------------------
# Formatting & Scoring Utilities
# ---------------------------------------------------------------------------


def _round_half_up(value: float, digits: int = 0) -> float | int:
    """Round with ties going up (2.5 -> 3, 1.25 -> 1.3), unlike the built-in round()."""
    if digits == 0:
        return math.floor(value + 0.5)
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def format_bytes(num_bytes: float) -> str:
    """Format a byte count as B, KiB (no decimals) or MiB (one decimal)."""
    if num_bytes < 1024:
        return f"{num_bytes:g} B"
    if num_bytes < 1024 * 1024:
        return f"{_round_half_up(num_bytes / 1024)} KiB"
    return f"{_round_half_up(num_bytes / (1024 * 1024), 1):.1f} MiB"


def truncate_url(url: str, max_length: int = 50) -> str:
    """Shorten a URL to max_length characters, ending in an ellipsis when cut."""
    if len(url) <= max_length:
        return url
    return url[: max_length - 3] + "..."


def calculate_score(value: float, good_threshold: float, poor_threshold: float) -> float:
    """Normalize value to 0-1: 1 at or below good, 0 at or above poor, linear between."""
    if value <= good_threshold:
        return 1
    if value >= poor_threshold:
        return 0
    return 1 - (value - good_threshold) / (poor_threshold - good_threshold)


def get_severity_by_bytes(
    num_bytes: float,
    moderate: float = 100000,
    serious: float = 300000,
    critical: float = 500000,
) -> str:
    """Bucket a byte count into a severity level (lower bounds inclusive)."""
    if num_bytes >= critical:
        return "critical"
    if num_bytes >= serious:
        return "serious"
    if num_bytes >= moderate:
        return "moderate"
    return "minor"


def get_severity_by_time(
    ms: float,
    moderate: float = 300,
    serious: float = 800,
    critical: float = 1500,
) -> str:
    """Bucket a duration in milliseconds into a severity level (lower bounds inclusive)."""
    if ms >= critical:
        return "critical"
    if ms >= serious:
        return "serious"
    if ms >= moderate:
        return "moderate"
    return "minor"


def format_cache_ttl(ms: float) -> str:
    """Format a cache lifetime using the largest whole unit (s, m, h, d, y)."""
    if ms == 0:
        return "No cache"
    seconds = math.floor(ms / 1000)
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h"
    days = hours // 24
    if days < 365:
        return f"{days}d"
    return f"{days // 365}y"


# ---------------------------------------------------------------------------
# Entity & URL Classification
# ---------------------------------------------------------------------------


def _hostname(url: str) -> str | None:
    try:
        return urlparse(url).hostname
    except ValueError:
        return None


def get_host_domain(url: str) -> str:
    """Return the hostname of url, or "" when it cannot be parsed."""
    return _hostname(url) or ""


def is_first_party(url: str, host_domain: str) -> bool:
    """True when url's hostname equals or contains host_domain (subdomains included)."""
    hostname = _hostname(url)
    if not hostname:
        return False
    return host_domain in hostname


def extract_entity_from_url(url: str) -> str | None:
    """Map a resource URL to a known third-party entity name via THIRD_PARTY_PATTERNS."""
    hostname = _hostname(url)
    if not hostname:
        return None
    for pattern, entity in THIRD_PARTY_PATTERNS:
        if pattern in hostname:
            return entity
    return None


def categorize_third_party(entity: str) -> str:
    """Classify a third-party entity name; "other" when no keyword matches."""
    lower = entity.lower()
    for category, keywords in THIRD_PARTY_CATEGORY_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return category
    return "other"


# ---------------------------------------------------------------------------
# Insight Extractors
# ---------------------------------------------------------------------------


def extract_cache_issues(audits: dict) -> list[dict]:
    """Resources served with a short cache lifetime, largest waste first."""
    issues = []
    for item in _audit_items(audits, "uses-long-cache-ttl"):
        url = _text(item.get("url"))
        if not url:
            continue
        cache_ttl = _size(item.get("cacheLifetimeMs"))
        issues.append({
            "url": url,
            "cache_ttl": cache_ttl,
            "cache_ttl_display": format_cache_ttl(cache_ttl),
            "transfer_size": _size(item.get("totalBytes")),
            "wasted_bytes": _size(item.get("wastedBytes")),
            "entity": extract_entity_from_url(url),
        })
    return sorted(issues, key=lambda issue: issue["wasted_bytes"], reverse=True)


def extract_image_issues(audits: dict) -> list[dict]:
    """Merge the image audits into one list, largest waste first.

    A URL reported by several audits keeps only its first occurrence, in
    IMAGE_AUDITS order (format, oversized, offscreen, unoptimized).
    """
    issues = []
    seen_urls: set[str] = set()
    for audit_id, issue_type, recommendation in IMAGE_AUDITS:
        for item in _audit_items(audits, audit_id):
            url = _text(item.get("url"))
            if not url or url in seen_urls:
                continue
            seen_urls.add(url)
            node = _as_dict(item.get("node"))
            issues.append({
                "url": url,
                "total_bytes": _size(item.get("totalBytes")),
                "wasted_bytes": _size(item.get("wastedBytes")),
                "issue_type": issue_type,
                "recommendation": recommendation,
                "snippet": _text(node.get("snippet")),
            })
    return sorted(issues, key=lambda issue: issue["wasted_bytes"], reverse=True)


def extract_unused_code(audits: dict, audit_id: str, host_domain: str) -> list[dict]:
    """Unused bytes per script or stylesheet (audit_id is unused-javascript or unused-css-rules)."""
    issues = []
    for item in _audit_items(audits, audit_id):
        url = _text(item.get("url"))
        if not url:
            continue
        transfer_size = _size(item.get("totalBytes"))
        wasted_bytes = _size(item.get("wastedBytes"))
        issues.append({
            "url": url,
            "transfer_size": transfer_size,
            "wasted_bytes": wasted_bytes,
            "wasted_percent": _round_half_up(wasted_bytes / transfer_size * 100) if transfer_size > 0 else 0,
            "entity": extract_entity_from_url(url),
            "is_first_party": is_first_party(url, host_domain),
        })
    return sorted(issues, key=lambda issue: issue["wasted_bytes"], reverse=True)


def extract_legacy_javascript(audits: dict) -> list[dict]:
    """Scripts shipping polyfills or transforms modern browsers do not need."""
    issues = []
    for item in _audit_items(audits, "legacy-javascript"):
        url = _text(item.get("url"))
        if not url:
            continue
        polyfills = [sub["signal"] for sub in _sub_items(item) if _text(sub.get("signal"))]
        issues.append({
            "url": url,
            "wasted_bytes": _size(item.get("wastedBytes")),
            "polyfills": polyfills,
            "entity": extract_entity_from_url(url),
        })
    return sorted(issues, key=lambda issue: issue["wasted_bytes"], reverse=True)


def extract_third_parties(audits: dict) -> list[dict]:
    """Third-party entities by main-thread blocking time, worst first."""
    issues = []
    for item in _audit_items(audits, "third-party-summary"):
        entity = item.get("entity")
        if isinstance(entity, str):
            entity_name = entity
        elif isinstance(entity, dict) and isinstance(entity.get("text"), str):
            entity_name = entity["text"]
        else:
            entity_name = "Unknown"

        urls = [sub["url"] for sub in _sub_items(item) if _text(sub.get("url"))]

        issues.append({
            "entity": entity_name,
            "blocking_time": _size(item.get("blockingTime")),
            "transfer_size": _size(item.get("transferSize")),
            "request_count": len(urls),
            "urls": urls,
            "category": categorize_third_party(entity_name),
        })
    return sorted(issues, key=lambda issue: issue["blocking_time"], reverse=True)


def extract_long_tasks(audits: dict) -> list[dict]:
    """Main-thread tasks over 50ms, longest first."""
    tasks = []
    for item in _audit_items(audits, "long-tasks"):
        tasks.append({
            "duration": _size(item.get("duration")),
            "start_time": _number(item.get("startTime")),
            "url": _text(item.get("url")),
            "attribution": item.get("attribution"),
        })
    return sorted(tasks, key=lambda task: task["duration"], reverse=True)


def _resource_type(url: str) -> str:
    if url.endswith(".js") or ".js?" in url:
        return "script"
    if url.endswith(".css") or ".css?" in url:
        return "stylesheet"
    return "other"


def extract_render_blocking_resources(audits: dict) -> list[dict]:
    """Resources delaying first paint, largest delay first."""
    resources = []
    for item in _audit_items(audits, "render-blocking-resources"):
        url = _text(item.get("url"))
        if not url:
            continue
        resources.append({
            "url": url,
            "transfer_size": _size(item.get("totalBytes")),
            "wasted_ms": _size(item.get("wastedMs")),
            "resource_type": _resource_type(url),
        })
    return sorted(resources, key=lambda resource: resource["wasted_ms"], reverse=True)


def extract_lcp_breakdown(audits: dict) -> dict | None:
    """Estimate the LCP phases from LCP, FCP and server response time.

    Lighthouse does not always expose the measured phases, so the breakdown is
    approximated: load delay is FCP - TTFB, load duration is a fixed share of
    LCP - FCP, and render delay is whatever remains.
    """
    lcp = _number(_as_dict(audits.get("largest-contentful-paint")).get("numericValue"))
    if not lcp:
        return None

    ttfb = _number(_as_dict(audits.get("server-response-time")).get("numericValue"))
    fcp = _number(_as_dict(audits.get("first-contentful-paint")).get("numericValue"))

    resource_load_delay = max(0, fcp - ttfb)
    resource_load_duration = max(0, (lcp - fcp) * LCP_RESOURCE_LOAD_SHARE)
    element_render_delay = max(0, lcp - ttfb - resource_load_delay - resource_load_duration)

    return {
        "ttfb": _round_half_up(ttfb),
        "resource_load_delay": _round_half_up(resource_load_delay),
        "resource_load_duration": _round_half_up(resource_load_duration),
        "element_render_delay": _round_half_up(element_render_delay),
        "total": _round_half_up(lcp),
    }


# ---------------------------------------------------------------------------
# Insight Aggregation
# ---------------------------------------------------------------------------


def extract_detailed_insights(audits: dict, analyzed_url: str | None = None) -> dict:
    """Run every insight extractor and total the recoverable savings.

    total_savings.size_bytes covers unused JS/CSS, cache and image waste;
    total_savings.time_ms covers render-blocking resources only.
    """
    host_domain = get_host_domain(analyzed_url) if analyzed_url else ""

    insights = {
        "lcp_breakdown": extract_lcp_breakdown(audits),
        "cache_issues": extract_cache_issues(audits),
        "image_issues": extract_image_issues(audits),
        "unused_javascript": extract_unused_code(audits, "unused-javascript", host_domain),
        "unused_css": extract_unused_code(audits, "unused-css-rules", host_domain),
        "legacy_javascript": extract_legacy_javascript(audits),
        "third_parties": extract_third_parties(audits),
        "long_tasks": extract_long_tasks(audits),
        "render_blocking": extract_render_blocking_resources(audits),
    }

    size_bytes = sum(
        issue["wasted_bytes"]
        for key in ("unused_javascript", "unused_css", "cache_issues", "image_issues")
        for issue in insights[key]
    )
    time_ms = sum(resource["wasted_ms"] for resource in insights["render_blocking"])

    insights["total_savings"] = {
        "time_ms": _round_half_up(time_ms),
        "size_bytes": _round_half_up(size_bytes),
    }
    return insights


# ---------------------------------------------------------------------------
# Diagnostics Table
# ---------------------------------------------------------------------------


def _diagnose_unused_javascript(insights: dict) -> dict:
    scripts = insights["unused_javascript"]
    total_wasted = sum(js["wasted_bytes"] for js in scripts)
    return {
        "id": "unused-javascript",
        "title": "Reduce unused JavaScript",
        "display_value": f"Est savings of {format_bytes(total_wasted)}",
        "description": "Remove unused JavaScript to reduce bytes consumed by network activity and improve page load performance.",
        "score": calculate_score(total_wasted, 150000, 500000),
        "severity": get_severity_by_bytes(total_wasted),
        "savings": {"bytes": total_wasted},
        "items": [
            {
                "url": js["url"],
                "size": js["transfer_size"],
                "wasted_bytes": js["wasted_bytes"],
                "metadata": {
                    "is_first_party": js["is_first_party"],
                    "wasted_percent": js["wasted_percent"],
                    "entity": js["entity"],
                },
            }
            for js in scripts[:MAX_DIAGNOSTIC_ITEMS]
        ],
        "category": "javascript",
    }


def _diagnose_unused_css(insights: dict) -> dict:
    stylesheets = insights["unused_css"]
    total_wasted = sum(css["wasted_bytes"] for css in stylesheets)
    return {
        "id": "unused-css",
        "title": "Reduce unused CSS",
        "display_value": f"Est savings of {format_bytes(total_wasted)}",
        "description": "Remove unused CSS rules to reduce bytes consumed by network activity.",
        "score": calculate_score(total_wasted, 50000, 200000),
        "severity": get_severity_by_bytes(total_wasted, 50000, 100000, 200000),
        "savings": {"bytes": total_wasted},
        "items": [
            {
                "url": css["url"],
                "size": css["transfer_size"],
                "wasted_bytes": css["wasted_bytes"],
                "metadata": {"wasted_percent": css["wasted_percent"]},
            }
            for css in stylesheets[:MAX_DIAGNOSTIC_ITEMS]
        ],
        "category": "resource",
    }


def _diagnose_long_tasks(insights: dict) -> dict:
    tasks = insights["long_tasks"]
    count = len(tasks)
    total_duration = sum(task["duration"] for task in tasks)
    if count > 5:
        severity = "critical"
    elif count > 3:
        severity = "serious"
    elif count > 1:
        severity = "moderate"
    else:
        severity = "minor"
    return {
        "id": "long-tasks",
        "title": "Avoid long main-thread tasks",
        "display_value": f"{count} long task{'s' if count > 1 else ''} found",
        "description": f"Long tasks block the main thread for {_round_half_up(total_duration)}ms total, causing the page to feel unresponsive.",
        "score": calculate_score(count, 2, 5),
        "severity": severity,
        "savings": {"time_ms": total_duration},
        "items": [
            {
                "label": truncate_url(task["url"]) if task["url"] else "Unknown source",
                "time_ms": task["duration"],
                "metadata": {"start_time": task["start_time"], "attribution": task["attribution"]},
            }
            for task in tasks[:MAX_DIAGNOSTIC_ITEMS]
        ],
        "category": "javascript",
    }


def _diagnose_render_blocking(insights: dict) -> dict:
    resources = insights["render_blocking"]
    total_wasted_ms = sum(resource["wasted_ms"] for resource in resources)
    return {
        "id": "render-blocking",
        "title": "Eliminate render-blocking resources",
        "display_value": f"Est savings of {_round_half_up(total_wasted_ms)}ms",
        "description": "Resources are blocking the first paint of your page. Consider delivering critical JS/CSS inline and deferring non-critical resources.",
        "score": calculate_score(total_wasted_ms, 500, 1500),
        "severity": get_severity_by_time(total_wasted_ms),
        "savings": {"time_ms": total_wasted_ms},
        "items": [
            {
                "url": resource["url"],
                "size": resource["transfer_size"],
                "time_ms": resource["wasted_ms"],
                "metadata": {"resource_type": resource["resource_type"]},
            }
            for resource in resources[:MAX_DIAGNOSTIC_ITEMS]
        ],
        "category": "rendering",
    }


def _diagnose_third_parties(insights: dict) -> dict:
    third_parties = insights["third_parties"]
    total_blocking = sum(tp["blocking_time"] for tp in third_parties)
    total_size = sum(tp["transfer_size"] for tp in third_parties)
    if total_blocking > 1000:
        severity = "critical"
    elif total_blocking > 500:
        severity = "serious"
    else:
        severity = "moderate"
    return {
        "id": "third-party-summary",
        "title": "Reduce impact of third-party code",
        "display_value": f"{_round_half_up(total_blocking)}ms blocking time",
        "description": f"Third-party code blocked the main thread for {_round_half_up(total_blocking)}ms and transferred {format_bytes(total_size)}.",
        "score": calculate_score(total_blocking, 250, 1000),
        "severity": severity,
        "savings": {"time_ms": total_blocking, "bytes": total_size},
        "items": [
            {
                "label": tp["entity"],
                "time_ms": tp["blocking_time"],
                "size": tp["transfer_size"],
                "metadata": {"category": tp["category"], "request_count": tp["request_count"]},
            }
            for tp in third_parties[:MAX_DIAGNOSTIC_ITEMS]
        ],
        "category": "network",
    }


def _diagnose_cache_issues(insights: dict) -> dict:
    cache_issues = insights["cache_issues"]
    count = len(cache_issues)
    total_wasted = sum(issue["wasted_bytes"] for issue in cache_issues)
    resource_label = "resource" if count == 1 else "resources"
    return {
        "id": "cache-policy",
        "title": "Serve static assets with efficient cache policy",
        "display_value": f"{count} {resource_label} found",
        "description": f"{count} static {resource_label} {'has' if count == 1 else 'have'} short cache lifetimes. A longer cache lifetime can speed up repeat visits.",
        "score": calculate_score(total_wasted, 100000, 500000),
        "severity": "serious" if total_wasted > 500000 else "moderate",
        "savings": {"bytes": total_wasted},
        "items": [
            {
                "url": issue["url"],
                "size": issue["transfer_size"],
                "wasted_bytes": issue["wasted_bytes"],
                "metadata": {"cache_ttl": issue["cache_ttl_display"], "entity": issue["entity"]},
            }
            for issue in cache_issues[:MAX_DIAGNOSTIC_ITEMS]
        ],
        "category": "network",
    }


def _diagnose_image_issues(insights: dict) -> dict:
    images = insights["image_issues"]
    total_wasted = sum(image["wasted_bytes"] for image in images)
    # dict.fromkeys keeps first-seen order
    issue_types = list(dict.fromkeys(image["issue_type"] for image in images))
    return {
        "id": "image-optimization",
        "title": "Properly size and optimize images",
        "display_value": f"Est savings of {format_bytes(total_wasted)}",
        "description": f"Images have optimization opportunities: {', '.join(issue_types)}. Properly sizing and formatting images can significantly reduce load time.",
        "score": calculate_score(total_wasted, 100000, 500000),
        "severity": get_severity_by_bytes(total_wasted),
        "savings": {"bytes": total_wasted},
        "items": [
            {
                "url": image["url"],
                "size": image["total_bytes"],
                "wasted_bytes": image["wasted_bytes"],
                "metadata": {
                    "issue_type": image["issue_type"],
                    "recommendation": image["recommendation"],
                    "snippet": image["snippet"],
                },
            }
            for image in images[:MAX_DIAGNOSTIC_ITEMS]
        ],
        "category": "resource",
    }


def _diagnose_legacy_javascript(insights: dict) -> dict:
    scripts = insights["legacy_javascript"]
    total_wasted = sum(script["wasted_bytes"] for script in scripts)
    return {
        "id": "legacy-javascript",
        "title": "Avoid serving legacy JavaScript to modern browsers",
        "display_value": f"Est savings of {format_bytes(total_wasted)}",
        "description": "Polyfills and transforms are shipped to modern browsers. Remove unnecessary polyfills by updating browser targets.",
        "score": calculate_score(total_wasted, 30000, 100000),
        "severity": get_severity_by_bytes(total_wasted, 30000, 60000, 100000),
        "savings": {"bytes": total_wasted},
        "items": [
            {
                "url": script["url"],
                "wasted_bytes": script["wasted_bytes"],
                "metadata": {"polyfills": script["polyfills"]},
            }
            for script in scripts[:MAX_DIAGNOSTIC_ITEMS]
        ],
        "category": "javascript",
    }


# Insight key -> diagnostic builder, in table insertion order
DIAGNOSTIC_BUILDERS = [
    ("unused_javascript", _diagnose_unused_javascript),
    ("unused_css", _diagnose_unused_css),
    ("long_tasks", _diagnose_long_tasks),
    ("render_blocking", _diagnose_render_blocking),
    ("third_parties", _diagnose_third_parties),
    ("cache_issues", _diagnose_cache_issues),
    ("image_issues", _diagnose_image_issues),
    ("legacy_javascript", _diagnose_legacy_javascript),
]


def generate_diagnostics_table(result: dict) -> list[dict]:
    """Build one diagnostic row per non-empty insight category, critical first.

    Rows with equal severity keep DIAGNOSTIC_BUILDERS order.
    """
    insights = result.get("insights") or {}
    items = [
        builder(insights)
        for insight_key, builder in DIAGNOSTIC_BUILDERS
        if insights.get(insight_key)
    ]
    return sorted(items, key=lambda item: SEVERITY_ORDER[item["severity"]])


# ---------------------------------------------------------------------------
# LCP Analysis
# ---------------------------------------------------------------------------


def detect_lcp_type(lcp_element: dict | None) -> str:
    """Classify the LCP element as image, video, background-image, text or unknown."""
    if not lcp_element:
        return "unknown"

    tag = (lcp_element.get("tag_name") or "").lower()
    if tag in ("img", "svg"):
        return "image"
    if tag == "video":
        return "video"
    # URL check comes before the text tags: a <div> with an image URL is a background image
    if lcp_element.get("url") and LCP_IMAGE_URL_PATTERN.search(lcp_element["url"]):
        return "background-image"
    if tag in LCP_TEXT_TAGS:
        return "text"
    return "unknown"


def detect_loading_mechanism(lcp_element: dict | None) -> str:
    """Infer how the LCP element is loaded from its HTML snippet."""
    if not lcp_element or not lcp_element.get("snippet"):
        return "unknown"

    snippet = lcp_element["snippet"].lower()
    if 'loading="lazy"' in snippet:
        return "lazy"
    if "fetchpriority" in snippet or "priority" in snippet:
        return "priority"
    if "defer" in snippet:
        return "deferred"
    return "eager"


def generate_lcp_recommendations(
    lcp_type: str,
    breakdown: dict | None,
    lcp_value: float | None,
    context: dict | None,
) -> list[dict]:
    """Build LCP recommendations from element type, phase breakdown and LCP time.

    Every rule is evaluated independently; the output keeps rule order.
    """
    recommendations = []

    if lcp_type == "image":
        recommendations.append({
            "id": "lcp-priority-hint",
            "title": "Add priority hint to LCP image",
            "description": 'Use fetchpriority="high" on the LCP image to prioritize its loading.',
            "impact": "high",
            "effort": "easy",
            "code_hints": ['<img src="..." fetchpriority="high" />'],
        })
        if _framework_name(context) == NEXT_JS_FRAMEWORK:
            recommendations.append({
                "id": "lcp-next-image-priority",
                "title": "Use Next.js Image with priority",
                "description": "Use next/image component with priority prop for the LCP image.",
                "impact": "high",
                "effort": "easy",
                "code_hints": ['<Image src="..." priority />'],
            })

    if breakdown:
        if breakdown["ttfb"] > 800:
            recommendations.append({
                "id": "lcp-reduce-ttfb",
                "title": "Reduce server response time (TTFB)",
                "description": f"TTFB is {breakdown['ttfb']}ms. Consider using a CDN, optimizing server logic, or implementing edge caching.",
                "impact": "high",
                "effort": "moderate",
            })
        if breakdown["resource_load_delay"] > 500:
            recommendations.append({
                "id": "lcp-preload",
                "title": "Preload the LCP resource",
                "description": f'The LCP resource has {breakdown["resource_load_delay"]}ms load delay. Use <link rel="preload"> to start loading earlier.',
                "impact": "medium",
                "effort": "easy",
                "code_hints": ['<link rel="preload" href="..." as="image" />'],
            })
        if breakdown["element_render_delay"] > 300:
            recommendations.append({
                "id": "lcp-reduce-render-delay",
                "title": "Reduce render-blocking resources",
                "description": f"Element render is delayed by {breakdown['element_render_delay']}ms. Remove or defer render-blocking CSS/JS.",
                "impact": "medium",
                "effort": "moderate",
            })

    if lcp_value and lcp_value > LCP_GOOD_MS:
        recommendations.append({
            "id": "lcp-critical-css",
            "title": "Inline critical CSS",
            "description": "Extract and inline the CSS needed for above-the-fold content to avoid render blocking.",
            "impact": "high" if lcp_value > LCP_POOR_MS else "medium",
            "effort": "moderate",
        })

    return recommendations


def generate_enhanced_lcp(result: dict, context: dict | None) -> dict | None:
    """Attach type, loading mechanism, recommendations and timing to the LCP element."""
    lcp_element = result.get("lcp_element")
    if not lcp_element:
        return None

    breakdown = (result.get("insights") or {}).get("lcp_breakdown")
    lcp_type = detect_lcp_type(lcp_element)

    enhanced = dict(lcp_element)
    enhanced["type"] = lcp_type
    enhanced["loading_mechanism"] = detect_loading_mechanism(lcp_element)
    # The largest painted element is treated as above the fold
    enhanced["is_above_the_fold"] = True
    enhanced["recommendations"] = generate_lcp_recommendations(
        lcp_type,
        breakdown,
        result["metrics"]["lcp"]["value"],
        context,
    )
    if breakdown:
        enhanced["timing"] = {
            "request_start": breakdown["ttfb"],
            "load_end": breakdown["ttfb"] + breakdown["resource_load_delay"] + breakdown["resource_load_duration"],
            "render_time": breakdown["element_render_delay"],
        }
    return enhanced


# ---------------------------------------------------------------------------
# Key Opportunities
# ---------------------------------------------------------------------------


def _with_framework_notes(opportunity: dict, framework_notes: list[dict]) -> dict:
    if framework_notes:
        opportunity["framework_notes"] = framework_notes
    return opportunity


def create_lcp_opportunity(result: dict, context: dict | None) -> dict:
    """Priority 1: bring Largest Contentful Paint under 2.5s."""
    lcp = result["metrics"]["lcp"]
    lcp_element = result.get("lcp_element") or {}
    breakdown = (result.get("insights") or {}).get("lcp_breakdown") or {}
    lcp_type = detect_lcp_type(lcp_element) if lcp_element else "unknown"
    lcp_url = lcp_element.get("url")
    tag_name = lcp_element.get("tag_name")

    steps = [{
        "order": 1,
        "title": "Identify and understand your LCP element",
        "instructions": f"Your LCP element type is {lcp_type}{f' ({tag_name})' if tag_name else ''}. The current LCP time is {lcp['display_value']}.",
    }]
    framework_notes = []

    if lcp_type == "image":
        steps.append({
            "order": 2,
            "title": "Add priority hint to LCP image",
            "instructions": 'Add fetchpriority="high" to ensure the browser prioritizes loading this image.',
            "code_example": {
                "language": "html",
                "code": f'<img src="{lcp_url or "hero-image.jpg"}" fetchpriority="high" alt="..." />',
            },
        })
        if _framework_name(context) == NEXT_JS_FRAMEWORK:
            framework_notes.append({
                "framework": "Next.js",
                "note": "Use the Image component with priority prop instead of native img tag.",
                "code_example": (
                    "import Image from 'next/image';\n\n"
                    f'<Image\n  src="{lcp_url or "/hero.jpg"}"\n  priority\n  alt="..."\n  width={{1200}}\n  height={{600}}\n/>'
                ),
                "doc_link": "https://nextjs.org/docs/app/api-reference/components/image#priority",
            })

    if breakdown.get("resource_load_delay", 0) > 300:
        steps.append({
            "order": 3,
            "title": "Preload the LCP resource",
            "instructions": "Add a preload link in the document head to start fetching the resource earlier.",
            "code_example": {
                "language": "html",
                "code": f'<link rel="preload" href="{lcp_url or "/hero.jpg"}" as="{"image" if lcp_type == "image" else "fetch"}" />',
                "file_path": "app/layout.tsx or pages/_document.tsx",
            },
        })

    if breakdown.get("ttfb", 0) > 600:
        steps.append({
            "order": 4,
            "title": "Improve server response time",
            "instructions": f"Your TTFB is {breakdown['ttfb']}ms. Consider implementing caching, using a CDN, or optimizing your server.",
            "estimated_time": "2-4 hours",
        })

    opportunity = {
        "id": "optimize-lcp",
        "priority": 1,
        "title": "Optimize Largest Contentful Paint (LCP)",
        "description": f'Your LCP is {lcp["display_value"]}, rated as "{lcp["rating"]}". The target is under 2.5 seconds.',
        "impact": {
            "level": "critical" if lcp["value"] > LCP_POOR_MS else "high",
            "lcp_improvement_ms": max(0, lcp["value"] - LCP_GOOD_MS),
            "score_improvement": 15 if lcp["rating"] == "poor" else 8,
        },
        "steps": steps,
        "related_audits": ["largest-contentful-paint", "largest-contentful-paint-element"],
        "resources": [
            {"title": "Optimize LCP", "url": "https://web.dev/optimize-lcp/"},
            {"title": "LCP Guide", "url": "https://web.dev/lcp/"},
        ],
    }
    return _with_framework_notes(opportunity, framework_notes)


def create_javascript_opportunity(result: dict, context: dict | None, wasted_bytes: float) -> dict:
    """Priority 2: cut unused JavaScript."""
    scripts = (result.get("insights") or {}).get("unused_javascript") or []
    first_party_waste = sum(js["wasted_bytes"] for js in scripts if js["is_first_party"])

    steps = [{
        "order": 1,
        "title": "Audit JavaScript bundles",
        "instructions": "Use webpack-bundle-analyzer or source-map-explorer to identify large modules.",
        "code_example": {"language": "bash", "code": "npx source-map-explorer dist/**/*.js"},
    }]
    framework_notes = []

    if first_party_waste > 50000:
        steps.append({
            "order": 2,
            "title": "Implement code splitting",
            "instructions": "Split your JavaScript into smaller chunks that can be loaded on demand.",
        })
        if _framework_name(context) == NEXT_JS_FRAMEWORK:
            framework_notes.append({
                "framework": "Next.js",
                "note": "Use dynamic imports for components that aren't needed immediately.",
                "code_example": (
                    "import dynamic from 'next/dynamic';\n\n"
                    "const HeavyComponent = dynamic(() => import('./HeavyComponent'), {\n"
                    "  loading: () => <p>Loading...</p>,\n"
                    "  ssr: false, // Optional: disable SSR for client-only components\n"
                    "});"
                ),
                "doc_link": "https://nextjs.org/docs/app/building-your-application/optimizing/lazy-loading",
            })

    steps.append({
        "order": 3,
        "title": "Review and remove unused dependencies",
        "instructions": "Check your package.json for dependencies that are no longer used.",
        "code_example": {"language": "bash", "code": "npx depcheck"},
    })

    if wasted_bytes > 500000:
        level = "critical"
    elif wasted_bytes > 200000:
        level = "high"
    else:
        level = "medium"

    opportunity = {
        "id": "optimize-javascript",
        "priority": 2,
        "title": "Reduce JavaScript bundle size",
        "description": f"{format_bytes(wasted_bytes)} of JavaScript is unused. Reducing bundle size improves load time and TBT.",
        "impact": {
            "level": level,
            "size_savings": wasted_bytes,
            "score_improvement": min(15, math.floor(wasted_bytes / 50000)),
        },
        "steps": steps,
        "related_audits": ["unused-javascript", "bootup-time", "mainthread-work-breakdown"],
        "resources": [
            {
                "title": "Reduce JavaScript Payloads",
                "url": "https://web.dev/reduce-javascript-payloads-with-code-splitting/",
            },
        ],
    }
    return _with_framework_notes(opportunity, framework_notes)


def _count_images(count: int) -> str:
    return f"{count} image{'' if count == 1 else 's'}"


def _be(count: int) -> str:
    return "is" if count == 1 else "are"


def _their(count: int) -> str:
    return "its" if count == 1 else "their"


def create_image_opportunity(result: dict, context: dict | None, wasted_bytes: float) -> dict:
    """Priority 3: convert, resize and lazy-load images."""
    issues = (result.get("insights") or {}).get("image_issues") or []
    format_issues = [issue for issue in issues if issue["issue_type"] == "format"]
    size_issues = [issue for issue in issues if issue["issue_type"] == "oversized"]
    offscreen_issues = [issue for issue in issues if issue["issue_type"] == "offscreen"]

    steps = []
    if format_issues:
        steps.append({
            "order": 1,
            "title": "Convert images to modern formats",
            "instructions": f"{_count_images(len(format_issues))} should be converted to WebP or AVIF format for better compression.",
        })
    if size_issues:
        steps.append({
            "order": 2,
            "title": "Serve properly sized images",
            "instructions": f"{_count_images(len(size_issues))} {_be(len(size_issues))} larger than {_their(len(size_issues))} display size. Resize images to match their rendered dimensions.",
        })
    if offscreen_issues:
        steps.append({
            "order": 3,
            "title": "Lazy load offscreen images",
            "instructions": f"{_count_images(len(offscreen_issues))} {_be(len(offscreen_issues))} below the fold and should be lazy loaded.",
            "code_example": {"language": "html", "code": '<img src="..." loading="lazy" alt="..." />'},
        })

    framework_notes = []
    if _framework_name(context) == NEXT_JS_FRAMEWORK:
        framework_notes.append({
            "framework": "Next.js",
            "note": "Next.js Image component automatically handles format conversion, sizing, and lazy loading.",
            "code_example": (
                "import Image from 'next/image';\n\n"
                '<Image\n  src="/photo.jpg"\n  alt="Description"\n  width={800}\n  height={600}\n'
                "  // priority // Only for above-the-fold images\n/>"
            ),
            "doc_link": "https://nextjs.org/docs/app/building-your-application/optimizing/images",
        })

    opportunity = {
        "id": "optimize-images",
        "priority": 3,
        "title": "Optimize images",
        "description": f"{format_bytes(wasted_bytes)} can be saved by properly optimizing {_count_images(len(issues))}.",
        "impact": {
            "level": "high" if wasted_bytes > 500000 else "medium",
            "size_savings": wasted_bytes,
            "lcp_improvement_ms": 200 if format_issues else 0,
        },
        "steps": steps,
        "related_audits": ["modern-image-formats", "uses-responsive-images", "offscreen-images"],
        "resources": [
            {"title": "Use Modern Image Formats", "url": "https://web.dev/uses-webp-images/"},
            {"title": "Properly Size Images", "url": "https://web.dev/uses-responsive-images/"},
        ],
    }
    return _with_framework_notes(opportunity, framework_notes)


def create_third_party_opportunity(result: dict, context: dict | None, blocking_time: float) -> dict:
    """Priority 4: defer or offload blocking third-party scripts."""
    third_parties = (result.get("insights") or {}).get("third_parties") or []
    top_blockers = ", ".join(tp["entity"] for tp in third_parties[:3])

    framework_notes = []
    if _framework_name(context) == NEXT_JS_FRAMEWORK:
        framework_notes.append({
            "framework": "Next.js",
            "note": "Use next/script with appropriate strategy to control loading behavior.",
            "code_example": (
                "import Script from 'next/script';\n\n"
                '<Script\n  src="https://analytics.example.com"\n  strategy="lazyOnload" // or "afterInteractive"\n/>'
            ),
            "doc_link": "https://nextjs.org/docs/app/building-your-application/optimizing/scripts",
        })

    opportunity = {
        "id": "optimize-third-parties",
        "priority": 4,
        "title": "Reduce third-party script impact",
        "description": f"Third-party scripts block the main thread for {_round_half_up(blocking_time)}ms. Top blockers: {top_blockers}.",
        "impact": {
            "level": "high" if blocking_time > 1000 else "medium",
            "lcp_improvement_ms": _round_half_up(blocking_time * 0.3),
        },
        "steps": [
            {
                "order": 1,
                "title": "Audit third-party scripts",
                "instructions": "Review each third-party script and determine if it's truly necessary.",
            },
            {
                "order": 2,
                "title": "Defer non-critical scripts",
                "instructions": "Load analytics and tracking scripts after the page has finished loading.",
                "code_example": {
                    "language": "javascript",
                    "code": "// Load analytics after page load\nwindow.addEventListener('load', () => {\n  // Initialize analytics\n});",
                },
            },
            {
                "order": 3,
                "title": "Use Partytown for heavy scripts",
                "instructions": "Consider using Partytown to run third-party scripts in a web worker.",
            },
        ],
        "related_audits": ["third-party-summary", "bootup-time"],
    }
    return _with_framework_notes(opportunity, framework_notes)


def create_render_blocking_opportunity(wasted_ms: float) -> dict:
    """Priority 5: inline critical CSS and defer the rest."""
    return {
        "id": "eliminate-render-blocking",
        "priority": 5,
        "title": "Eliminate render-blocking resources",
        "description": f"Render-blocking resources delay first paint by {_round_half_up(wasted_ms)}ms.",
        "impact": {
            "level": "high" if wasted_ms > 1000 else "medium",
            "lcp_improvement_ms": _round_half_up(wasted_ms * 0.7),
        },
        "steps": [
            {
                "order": 1,
                "title": "Inline critical CSS",
                "instructions": "Extract CSS needed for above-the-fold content and inline it in the HTML.",
            },
            {
                "order": 2,
                "title": "Defer non-critical CSS",
                "instructions": "Load non-critical CSS asynchronously using media queries or JavaScript.",
                "code_example": {
                    "language": "html",
                    "code": "<link rel=\"stylesheet\" href=\"non-critical.css\" media=\"print\" onload=\"this.media='all'\">",
                },
            },
            {
                "order": 3,
                "title": "Add async/defer to scripts",
                "instructions": "Non-critical scripts should use async or defer attributes.",
                "code_example": {"language": "html", "code": '<script src="app.js" defer></script>'},
            },
        ],
        "related_audits": ["render-blocking-resources", "critical-request-chains"],
    }


def create_cls_opportunity(result: dict) -> dict:
    """Priority 6: stop layout shifts."""
    cls = result["metrics"]["cls"]
    return {
        "id": "improve-cls",
        "priority": 6,
        "title": "Improve Cumulative Layout Shift (CLS)",
        "description": f'Your CLS is {cls["display_value"]}, rated as "{cls["rating"]}". Target is under 0.1.',
        "impact": {
            "level": "high" if cls["value"] > 0.25 else "medium",
            "score_improvement": 5,
        },
        "steps": [
            {
                "order": 1,
                "title": "Set explicit dimensions on images and videos",
                "instructions": "Always specify width and height attributes on media elements.",
                "code_example": {"language": "html", "code": '<img src="..." width="800" height="600" alt="..." />'},
            },
            {
                "order": 2,
                "title": "Reserve space for dynamic content",
                "instructions": "Use CSS to reserve space for ads, embeds, and dynamically injected content.",
            },
            {
                "order": 3,
                "title": "Avoid inserting content above existing content",
                "instructions": "New content should be inserted below the current viewport or with user action.",
            },
            {
                "order": 4,
                "title": "Use CSS transform for animations",
                "instructions": "Prefer transform and opacity for animations instead of properties that trigger layout.",
            },
        ],
        "related_audits": ["cumulative-layout-shift", "unsized-images"],
        "resources": [{"title": "Optimize CLS", "url": "https://web.dev/optimize-cls/"}],
    }


def generate_key_opportunities(result: dict, context: dict | None) -> list[dict]:
    """Select the applicable opportunities and order them by fixed priority.

    Priority encodes remediation order (render first, then transfer weight,
    then runtime blocking), not the size of the problem.
    """
    insights = result.get("insights") or {}
    metrics = result["metrics"]
    opportunities = []

    if metrics["lcp"]["rating"] != "good":
        opportunities.append(create_lcp_opportunity(result, context))

    js_waste = sum(js["wasted_bytes"] for js in insights.get("unused_javascript") or [])
    if js_waste > JS_WASTE_THRESHOLD:
        opportunities.append(create_javascript_opportunity(result, context, js_waste))

    image_waste = sum(image["wasted_bytes"] for image in insights.get("image_issues") or [])
    if image_waste > IMAGE_WASTE_THRESHOLD:
        opportunities.append(create_image_opportunity(result, context, image_waste))

    third_party_blocking = sum(tp["blocking_time"] for tp in insights.get("third_parties") or [])
    if third_party_blocking > THIRD_PARTY_BLOCKING_THRESHOLD:
        opportunities.append(create_third_party_opportunity(result, context, third_party_blocking))

    render_blocking_waste = sum(rb["wasted_ms"] for rb in insights.get("render_blocking") or [])
    if render_blocking_waste > RENDER_BLOCKING_THRESHOLD:
        opportunities.append(create_render_blocking_opportunity(render_blocking_waste))

    if metrics["cls"]["rating"] != "good":
        opportunities.append(create_cls_opportunity(result))

    return sorted(opportunities, key=lambda opp: opp["priority"])


# ---------------------------------------------------------------------------
# Actionable Report
# ---------------------------------------------------------------------------


def generate_next_steps(result: dict, opportunities: list[dict]) -> list[dict]:
    """Derive at most MAX_NEXT_STEPS follow-up actions from the top opportunities."""
    steps = []
    for opportunity in opportunities[:3]:
        level = opportunity["impact"]["level"]
        if level not in ("critical", "high"):
            continue
        first_step = opportunity["steps"][0]["title"] if opportunity["steps"] else opportunity["title"]
        steps.append({
            "id": f"next-{opportunity['id']}",
            "title": first_step,
            "description": f'Start with the first step of "{opportunity["title"]}" - this has {level} impact.',
            "type": "code-change",
            "urgency": "immediate" if level == "critical" else "soon",
            "related_opportunities": [opportunity["id"]],
        })

    steps.append({
        "id": "next-setup-monitoring",
        "title": "Set up continuous performance monitoring",
        "description": "Run this report in your CI/CD pipeline to catch regressions early.",
        "type": "monitoring",
        "urgency": "when-possible",
    })

    performance_score = result["scores"].get("performance")
    if performance_score is not None and performance_score < 90:
        steps.append({
            "id": "next-perf-testing",
            "title": "Add performance tests to CI pipeline",
            "description": "Create performance budgets and fail builds that exceed thresholds.",
            "type": "testing",
            "urgency": "soon",
        })

    return steps[:MAX_NEXT_STEPS]


def _is_quick_win(opportunity: dict) -> bool:
    return any(
        "minute" in (step.get("estimated_time") or "") or step.get("code_example")
        for step in opportunity["steps"]
    )


def generate_summary(result: dict, diagnostics: list[dict], opportunities: list[dict]) -> dict:
    """Executive summary: health status, quick wins, potential savings, top priorities."""
    performance_score = result["scores"].get("performance") or 0
    if performance_score >= 90:
        health_status = "healthy"
    elif performance_score >= 50:
        health_status = "needs-attention"
    else:
        health_status = "critical"

    total_savings = (result.get("insights") or {}).get("total_savings")
    if total_savings:
        time_ms = total_savings["time_ms"]
        size_bytes = total_savings["size_bytes"]
    else:
        time_ms = sum(item.get("savings", {}).get("time_ms", 0) for item in diagnostics)
        size_bytes = sum(item.get("savings", {}).get("bytes", 0) for item in diagnostics)

    return {
        "health_status": health_status,
        "quick_wins_count": sum(1 for opportunity in opportunities if _is_quick_win(opportunity)),
        "potential_savings": {
            "time_ms": _round_half_up(time_ms),
            "size_bytes": _round_half_up(size_bytes),
        },
        "top_priorities": [opportunity["title"] for opportunity in opportunities[:3]],
    }


def generate_actionable_report(result: dict, context: dict | None = None) -> dict:
    """Build the full actionable report for one PerformanceResult.

    Pure apart from the generated_at timestamp: the same inputs always yield
    the same diagnostics, opportunities, next steps and summary.
    """
    diagnostics_table = generate_diagnostics_table(result)
    enhanced_lcp = generate_enhanced_lcp(result, context)
    key_opportunities = generate_key_opportunities(result, context)

    report = {"performance_result": result}
    if context:
        report["project_context"] = context
    if enhanced_lcp:
        report["enhanced_lcp"] = enhanced_lcp
    report["diagnostics_table"] = diagnostics_table
    report["key_opportunities"] = key_opportunities
    report["next_steps"] = generate_next_steps(result, key_opportunities)
    report["summary"] = generate_summary(result, diagnostics_table, key_opportunities)
    report["generated_at"] = datetime.now(timezone.utc).isoformat()
    return report


# ---------------------------------------------------------------------------
# Threshold Checks (CI mode)
# ---------------------------------------------------------------------------


def evaluate_thresholds(result: dict, thresholds: dict) -> list[dict]:
    """Compare a PerformanceResult against CI thresholds; returns the violations.

    A threshold that is missing or 0 is not checked.
    """
    violations = []

    min_performance = thresholds.get("performance")
    performance_score = result["scores"].get("performance")
    if min_performance and performance_score is not None and performance_score < min_performance:
        violations.append({
            "metric": "performance",
            "actual": performance_score,
            "threshold": min_performance,
            "url": result["url"],
        })

    for threshold_key, label, metric_key in METRIC_THRESHOLDS:
        limit = thresholds.get(threshold_key)
        value = result["metrics"][metric_key]["value"]
        if limit and value > limit:
            violations.append({
                "metric": label,
                "actual": _round_half_up(value, 3) if metric_key == "cls" else _round_half_up(value),
                "threshold": limit,
                "url": result["url"],
            })

    return violations


def format_violations(violations: list[dict]) -> str:
    """Render threshold violations for the terminal."""
    if not violations:
        return "All thresholds passed!"
    lines = ["Threshold violations:"]
    for violation in violations:
        lines.append(f"  FAIL {violation['url']} {violation['metric']}: {violation['actual']} (threshold: {violation['threshold']})")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Batch Processing
# ---------------------------------------------------------------------------


def process_urls(
    urls: list[str],
    api_key: str | None,
    strategies: list[str],
    categories: list[str],
    delay: float,
    workers: int,
    verbose: bool = False,
    include_raw: bool = False,
) -> list[dict]:
    """Fetch every (url, strategy) pair concurrently.

    Returns one outcome per pair, in task order: ``{"url", "strategy",
    "result", "error"}`` where exactly one of result/error is set.
    """
    task_list = [(url, strategy) for url in urls for strategy in strategies]
    total_tasks = len(task_list)
    outcomes: list[dict | None] = [None] * total_tasks
    completed_count = 0
    lock = threading.Lock()
    semaphore = threading.Semaphore(1)  # rate limiter
    last_request_time = [0.0]

    def process_single(url: str, strategy: str) -> dict:
        nonlocal completed_count
        with semaphore:
            elapsed = time.monotonic() - last_request_time[0]
            if elapsed < delay:
                time.sleep(delay - elapsed)
            last_request_time[0] = time.monotonic()

        outcome = {"url": url, "strategy": strategy, "result": None, "error": None}
        try:
            if verbose:
                print(f"  Fetching {url} ({strategy})...", file=sys.stderr)
            response = fetch_pagespeed_result(url, strategy, api_key, categories)
            outcome["result"] = build_performance_result(response, url, strategy, include_raw)
        except PageSpeedError as exc:
            outcome["error"] = str(exc)
            print(f"  Error: {exc}", file=sys.stderr)

        with lock:
            completed_count += 1
            print(f"\r  Progress: {completed_count}/{total_tasks}", end="", file=sys.stderr, flush=True)

        return outcome

    effective_workers = min(workers, total_tasks)
    if effective_workers <= 1:
        for task_index, (url, strategy) in enumerate(task_list):
            outcomes[task_index] = process_single(url, strategy)
    else:
        with ThreadPoolExecutor(max_workers=effective_workers) as executor:
            futures = {
                executor.submit(process_single, url, strategy): task_index
                for task_index, (url, strategy) in enumerate(task_list)
            }
            for future in as_completed(futures):
                outcomes[futures[future]] = future.result()

    print("", file=sys.stderr)  # newline after progress
    return outcomes


# ---------------------------------------------------------------------------
# Output Formats
# ---------------------------------------------------------------------------


def generate_output_path(output_dir: str, label: str, extension: str) -> Path:
    """Generate a timestamped output file path."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    dir_path = Path(output_dir)
    dir_path.mkdir(parents=True, exist_ok=True)
    return dir_path / f"{timestamp}-{label}.{extension}"


def output_json(reports: list[dict], output_path: Path) -> str:
    """Write actionable reports to JSON with run metadata. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_data = {
        "metadata": {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "total_reports": len(reports),
            "strategies": sorted({report["performance_result"]["strategy"] for report in reports}),
            "tool_version": __version__,
        },
        "reports": reports,
    }
    with open(output_path, "w") as fh:
        json.dump(output_data, fh, indent=2, default=str)
    return str(output_path)


def output_csv(dataframe: pd.DataFrame, output_path: Path) -> str:
    """Write DataFrame to CSV. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    dataframe.to_csv(output_path, index=False)
    return str(output_path)


DIAGNOSTIC_COLUMNS = [
    "url", "strategy", "id", "title", "severity", "category",
    "display_value", "score", "savings_ms", "savings_bytes", "item_count",
]


def diagnostics_to_dataframe(report: dict) -> pd.DataFrame:
    """One row per diagnostic, in table order."""
    result = report["performance_result"]
    rows = []
    for item in report["diagnostics_table"]:
        savings = item.get("savings", {})
        rows.append({
            "url": result["url"],
            "strategy": result["strategy"],
            "id": item["id"],
            "title": item["title"],
            "severity": item["severity"],
            "category": item["category"],
            "display_value": item["display_value"],
            "score": item["score"],
            "savings_ms": savings.get("time_ms"),
            "savings_bytes": savings.get("bytes"),
            "item_count": len(item["items"]),
        })
    return pd.DataFrame(rows, columns=DIAGNOSTIC_COLUMNS)


def summary_dataframe(reports: list[dict], failures: list[dict] | None = None) -> pd.DataFrame:
    """One row per analyzed URL/strategy; failed fetches keep their error message."""
    rows = []
    for report in reports:
        result = report["performance_result"]
        metrics = result["metrics"]
        summary = report["summary"]
        rows.append({
            "url": result["url"],
            "strategy": result["strategy"],
            "performance_score": result["scores"]["performance"],
            "accessibility_score": result["scores"]["accessibility"],
            "best_practices_score": result["scores"]["best_practices"],
            "seo_score": result["scores"]["seo"],
            "lcp_ms": metrics["lcp"]["value"],
            "fcp_ms": metrics["fcp"]["value"],
            "cls": metrics["cls"]["value"],
            "tbt_ms": metrics["tbt"]["value"],
            "health_status": summary["health_status"],
            "quick_wins": summary["quick_wins_count"],
            "potential_savings_ms": summary["potential_savings"]["time_ms"],
            "potential_savings_bytes": summary["potential_savings"]["size_bytes"],
            "opportunities": ";".join(opp["id"] for opp in report["key_opportunities"]),
            "error": None,
        })
    for failure in failures or []:
        rows.append({"url": failure["url"], "strategy": failure["strategy"], "error": failure["error"]})
    return pd.DataFrame(rows)


def format_terminal_report(report: dict) -> str:
    """Format an actionable report as human-readable text."""
    result = report["performance_result"]
    summary = report["summary"]
    lines = [
        f"\n{'=' * 60}",
        f"  URL:      {result['url']}",
        f"  Strategy: {result['strategy']}",
        f"  Health:   {summary['health_status']}",
        f"{'=' * 60}",
    ]

    score_labels = [
        ("Performance", "performance"),
        ("Accessibility", "accessibility"),
        ("Best Practices", "best_practices"),
        ("SEO", "seo"),
    ]
    for label, key in score_labels:
        value = result["scores"].get(key)
        if value is not None:
            lines.append(f"  {label}: {value}/100")

    lines.append("")
    lines.append("  --- Core Web Vitals ---")
    metric_labels = [
        ("Largest Contentful Paint", "lcp"),
        ("First Contentful Paint", "fcp"),
        ("Cumulative Layout Shift", "cls"),
        ("Total Blocking Time", "tbt"),
        ("Speed Index", "si"),
        ("Time to Interactive", "tti"),
    ]
    for label, key in metric_labels:
        metric = result["metrics"][key]
        lines.append(f"    {label:.<36} {metric['display_value']} [{metric['rating']}]")

    enhanced_lcp = report.get("enhanced_lcp")
    if enhanced_lcp:
        lines.append("")
        lines.append("  --- LCP Element ---")
        lines.append(f"    {enhanced_lcp['tag_name']} ({enhanced_lcp['type']}, {enhanced_lcp['loading_mechanism']})")
        if enhanced_lcp.get("url"):
            lines.append(f"    {truncate_url(enhanced_lcp['url'], 70)}")
        for recommendation in enhanced_lcp["recommendations"]:
            lines.append(f"    - [{recommendation['impact']}] {recommendation['title']}")

    if report["diagnostics_table"]:
        lines.append("")
        lines.append("  --- Diagnostics ---")
        for item in report["diagnostics_table"]:
            lines.append(f"    [{item['severity'].upper():<8}] {item['title']}: {item['display_value']}")
            for entry in item["items"][:3]:
                label = entry.get("url") or entry.get("label") or ""
                lines.append(f"               {truncate_url(label, 60)}")

    if report["key_opportunities"]:
        lines.append("")
        lines.append("  --- Key Opportunities ---")
        for opportunity in report["key_opportunities"]:
            lines.append(f"    {opportunity['priority']}. {opportunity['title']} ({opportunity['impact']['level']})")
            lines.append(f"       {opportunity['description']}")
            for step in opportunity["steps"]:
                lines.append(f"       {step['order']}) {step['title']}")

    lines.append("")
    lines.append("  --- Next Steps ---")
    for step in report["next_steps"]:
        lines.append(f"    [{step['urgency']}] {step['title']}")

    savings = summary["potential_savings"]
    lines.append("")
    lines.append(f"  Quick wins: {summary['quick_wins_count']}")
    lines.append(f"  Potential savings: {savings['time_ms']}ms, {format_bytes(savings['size_bytes'])}")
    return "\n".join(lines)


def _write_outputs(
    reports: list[dict],
    failures: list[dict],
    output_format: str,
    output_dir: str,
    explicit_output: str | None,
    label: str,
) -> list[str]:
    """Print text reports and/or write JSON and CSV files. Returns the written paths."""
    if output_format == "text":
        for report in reports:
            print(format_terminal_report(report))
        return []

    written_files: list[str] = []

    if output_format in ("json", "both"):
        if explicit_output:
            json_path = Path(explicit_output).with_suffix(".json")
        else:
            json_path = generate_output_path(output_dir, label, "json")
        written_files.append(output_json(reports, json_path))

    if output_format in ("csv", "both"):
        if explicit_output:
            csv_path = Path(explicit_output).with_suffix(".csv")
        else:
            csv_path = generate_output_path(output_dir, f"{label}-diagnostics", "csv")
        frames = [diagnostics_to_dataframe(report) for report in reports]
        dataframe = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=DIAGNOSTIC_COLUMNS)
        written_files.append(output_csv(dataframe, csv_path))

        if len(reports) + len(failures) > 1:
            summary_path = csv_path.with_name(f"{csv_path.stem}-summary.csv")
            written_files.append(output_csv(summary_dataframe(reports, failures), summary_path))

    print("\nResults written to:", file=sys.stderr)
    for filepath in written_files:
        print(f"  {filepath}", file=sys.stderr)

    return written_files


def _check_thresholds(reports: list[dict], thresholds: dict) -> int:
    """Evaluate CI thresholds for every report; returns the process exit code."""
    violations = []
    for report in reports:
        violations.extend(evaluate_thresholds(report["performance_result"], thresholds))
    print(format_violations(violations), file=sys.stderr)
    return THRESHOLD_EXIT_CODE if violations else 0


# ---------------------------------------------------------------------------
# Subcommand: analyze
# ---------------------------------------------------------------------------


def cmd_analyze(args: argparse.Namespace) -> None:
    """Fetch PageSpeed results for each URL and emit actionable reports."""
    urls = []
    for raw_url in args.urls:
        url = validate_url(raw_url)
        if url is None:
            print(f"Warning: skipping invalid URL: {raw_url}", file=sys.stderr)
            continue
        urls.append(url)
    if not urls:
        print("Error: no valid URLs provided", file=sys.stderr)
        sys.exit(1)

    context = load_project_context(getattr(args, "context", None))
    strategies = [args.strategy] if args.strategy != "both" else ["mobile", "desktop"]
    categories = getattr(args, "categories", DEFAULT_CATEGORIES)

    print(f"Analyzing {len(urls)} URL(s) with strategy: {args.strategy}", file=sys.stderr)
    outcomes = process_urls(
        urls=urls,
        api_key=args.api_key,
        strategies=strategies,
        categories=categories,
        delay=args.delay,
        workers=args.workers,
        verbose=args.verbose,
        include_raw=getattr(args, "include_raw", False),
    )

    reports = [generate_actionable_report(outcome["result"], context) for outcome in outcomes if outcome["result"]]
    failures = [outcome for outcome in outcomes if outcome["error"]]

    _write_outputs(
        reports,
        failures,
        getattr(args, "output_format", DEFAULT_OUTPUT_FORMAT),
        getattr(args, "output_dir", DEFAULT_OUTPUT_DIR),
        getattr(args, "output", None),
        args.strategy,
    )

    if not reports:
        print(f"Error: all {len(failures)} request(s) failed", file=sys.stderr)
        sys.exit(1)
    if failures:
        print(f"  Errors: {len(failures)}", file=sys.stderr)

    if getattr(args, "ci", False):
        sys.exit(_check_thresholds(reports, args.thresholds))


# ---------------------------------------------------------------------------
# Subcommand: report
# ---------------------------------------------------------------------------


def load_api_response(file_path: str) -> dict:
    """Load a saved raw PageSpeed Insights response from disk."""
    path = Path(file_path)
    if not path.is_file():
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        sys.exit(1)
    try:
        with open(path) as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        print(f"Error: malformed JSON in {file_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    if not isinstance(data, dict) or "lighthouseResult" not in data:
        print(f"Error: {file_path} is not a PageSpeed Insights response (no lighthouseResult)", file=sys.stderr)
        sys.exit(1)
    return data


def cmd_report(args: argparse.Namespace) -> None:
    """Build an actionable report from a saved PageSpeed response (no network)."""
    api_response = load_api_response(args.input_file)
    lighthouse = api_response["lighthouseResult"]
    url = getattr(args, "url", None) or lighthouse.get("finalUrl") or lighthouse.get("requestedUrl") or api_response.get("id")
    if not url:
        print("Error: cannot determine the analyzed URL; pass --url", file=sys.stderr)
        sys.exit(1)

    context = load_project_context(getattr(args, "context", None))
    strategy = args.strategy if args.strategy in ("mobile", "desktop") else DEFAULT_STRATEGY
    result = build_performance_result(api_response, url, strategy, getattr(args, "include_raw", False))
    report = generate_actionable_report(result, context)

    _write_outputs(
        [report],
        [],
        getattr(args, "output_format", DEFAULT_OUTPUT_FORMAT),
        getattr(args, "output_dir", DEFAULT_OUTPUT_DIR),
        getattr(args, "output", None),
        strategy,
    )

    if getattr(args, "ci", False):
        sys.exit(_check_thresholds([report], args.thresholds))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)
    args.thresholds = load_thresholds(config)

    commands = {
        "analyze": cmd_analyze,
        "report": cmd_report,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
