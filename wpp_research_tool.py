# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests",
#   "pandas",
#   "rich",
# ]
# ///
"""WordPress Performance Research CLI Tool.

Extracts performance metrics (Web Vitals, Server-Timing) from WebPageTest
results and from live HTTP benchmarks, aggregates them across runs into
medians/percentiles, and renders them as terminal, CSV or Markdown tables.
"""

from __future__ import annotations

import argparse
import math
import os
import random
import re
import sys
import time
import tomllib
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from urllib.parse import urlparse

import pandas as pd
import requests
from rich.console import Console
from rich.table import Table

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

WPT_BASE_URL = "https://www.webpagetest.org"
WPT_API_KEY_HEADER = "X-WPT-API-KEY"

OUTPUT_FORMAT_TABLE = "table"
OUTPUT_FORMAT_CSV = "csv"
OUTPUT_FORMAT_MD = "md"
VALID_OUTPUT_FORMATS = (OUTPUT_FORMAT_TABLE, OUTPUT_FORMAT_CSV, OUTPUT_FORMAT_MD)

MEDIAN_PERCENTILES = [50]
KEY_PERCENTILES = [10, 25, 50, 75, 90]

DEFAULT_TIMEOUT = 60.0
DEFAULT_CONCURRENCY = 1
DEFAULT_NUMBER = 1

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0
RETRYABLE_STATUS_CODES = {429, 500, 503}

CONFIG_FILENAMES = ["wpp-research.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "wpp-research",
]
GLOBAL_EXPLICIT_ATTR = "_explicit_global_args"

SERVER_TIMING_PREFIX = "Server-Timing:"

# WebPageTest metrics: (accepted names, firstView field). These are the
# metrics highlighted in the https://www.webpagetest.org/graph_page_data.php view.
WPT_METRICS = [
    (("FCP", "fcp", "First Contentful Paint"), "firstContentfulPaint"),
    (("LCP", "lcp", "Largest Contentful Paint"), "chromeUserTiming.LargestContentfulPaint"),
    (("CLS", "cls", "Cumulative Layout Shift"), "chromeUserTiming.CumulativeLayoutShift"),
    (("TBT", "tbt", "Total Blocking Time"), "TotalBlockingTime"),
    (("Load Time (onload)",), "docTime"),
    (("Load Time (Navigation Timing)",), "loadEventStart"),
    (("DOM Content Loaded (Navigation Timing)",), "domContentLoadedEventStart"),
    (("SI", "si", "Speed Index"), "SpeedIndex"),
    (("TTFB", "ttfb", "Time to First Byte"), "TTFB"),
    (("Base Page SSL Time",), "basePageSSLTime"),
    (("TTSR", "ttsr", "Time to Start Render"), "render"),
    (("TTI", "tti", "Time to Interactive"), "LastInteractive"),
    (("TTVC", "ttvc", "Time to Visually Complete"), "visualComplete"),
    (("LVC", "lvc", "Last Visual Change"), "lastVisualChange"),
    (("TTT", "ttt", "Time to Title"), "titleTime"),
    (("Fully Loaded",), "fullyLoaded"),
    (("Estimated RTT to Server",), "server_rtt"),
    (("DOM Elements",), "domElements"),
    (("Connections",), "connections"),
    (("Requests (onload)",), "requestsDoc"),
    (("Requests (Fully Loaded)",), "requests"),
    (("Bytes In (onload)",), "bytesInDoc"),
    (("Bytes In (Fully Loaded)",), "bytesIn"),
]

WPT_METRIC_FIELDS = {name: field for names, field in WPT_METRICS for name in names}

TEST_ID_PATTERN = re.compile(r"^[0-9]{6}_[A-Za-z0-9_]+$")
RESULT_URL_PATTERN = re.compile(r"^https://www.webpagetest.org/result/([A-Za-z0-9_]+)")
LEADING_FLOAT_PATTERN = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class WptResearchError(Exception):
    """Base class for all errors raised by this tool."""


class WptResultError(WptResearchError):
    """Raised when a WebPageTest result cannot be identified or fetched."""


class MetricConfigurationError(WptResearchError):
    """Raised for metric requests that can never succeed."""


class UnsupportedMetricError(MetricConfigurationError):
    pass


class MetricMergeError(MetricConfigurationError):
    pass


class ServerTimingMetricMissingError(WptResearchError):
    """Raised when a named Server-Timing metric is absent from a run."""


class ServerTimingConsistencyError(WptResearchError):
    """Raised when runs of one result do not report the same Server-Timing metrics."""


class InvalidServerTimingHeaderError(WptResearchError):
    pass


class ResponseHeaderError(WptResearchError):
    """Raised when a run has no usable response header of the requested name."""


class BenchmarkError(WptResearchError):
    """Raised when a benchmarked URL did not produce a single response."""


# Per-run failures that are recorded as a missing value instead of aborting.
SOFT_EXTRACTION_ERRORS = (
    KeyError,
    IndexError,
    TypeError,
    AttributeError,
    ValueError,
    ResponseHeaderError,
)


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def percentile(p: float, values: Iterable[float | None]) -> float:
    """Return the p-th percentile of values, interpolating linearly between ranks.

    None entries are ignored. Returns 0 when there is nothing left to
    compute from; callers rendering tables rely on always getting a number.
    """
    ordered = sorted(value for value in values if value is not None)
    count = len(ordered)
    if count == 0:
        return 0

    if p <= 0:
        return ordered[0]
    if p >= 100:
        return ordered[-1]

    index = (p / 100) * (count - 1)
    if index.is_integer():
        return ordered[int(index)]

    lower_index = math.floor(index)
    weight = index - lower_index
    return ordered[lower_index] * (1 - weight) + ordered[lower_index + 1] * weight


def median(values: Iterable[float | None]) -> float:
    return percentile(50, values)


def standard_deviation(values: list[float], use_population: bool = False) -> float:
    """Standard deviation of values (sample variance unless use_population).

    Unlike percentile(), values must be non-empty and free of None.
    """
    mean = sum(values) / len(values)
    squared_deviations = sum((value - mean) ** 2 for value in values)
    return math.sqrt(squared_deviations / (len(values) - (0 if use_population else 1)))


def median_absolute_deviation(values: Iterable[float | None]) -> float:
    present = [value for value in values if value is not None]
    center = median(present)
    return median([abs(value - center) for value in present])


def _leading_float(text: str) -> float | None:
    """Parse the number at the start of text, ignoring trailing garbage."""
    match = LEADING_FLOAT_PATTERN.match(text.strip())
    if not match:
        return None
    return float(match.group(0))


# ---------------------------------------------------------------------------
# WebPageTest Results
# ---------------------------------------------------------------------------


def is_test_id(test_id: str) -> bool:
    return bool(TEST_ID_PATTERN.match(test_id))


def get_test_id_from_result_url(result_url: str) -> str:
    match = RESULT_URL_PATTERN.match(result_url)
    if not match:
        raise WptResultError("Invalid WebPageTest result URL.")
    return match.group(1)


def get_result_url_for_test_id(test_id: str) -> str:
    return f"{WPT_BASE_URL}/result/{test_id}/"


def get_json_result_url_for_test_id(test_id: str, pretty: bool = False) -> str:
    return f"{WPT_BASE_URL}/jsonResult.php?test={test_id}{'&pretty=1' if pretty else ''}"


def parse_wpt_test_id(test_id_or_url: str) -> str:
    """Accept either a WebPageTest result URL or a bare test ID."""
    try:
        return get_test_id_from_result_url(test_id_or_url)
    except WptResultError:
        if not is_test_id(test_id_or_url):
            raise WptResultError(
                f"The value {test_id_or_url} is not a valid WebPageTest test result ID or URL."
            ) from None
        return test_id_or_url


def unwrap_result_json(result: object) -> dict:
    """Validate the jsonResult.php envelope and return its data payload."""
    if not isinstance(result, dict) or not result.get("statusCode") or not result.get("statusText"):
        raise WptResultError("Invalid result response")
    if result["statusCode"] != 200:
        error_prefix = "Test not completed yet: " if result["statusCode"] == 100 else ""
        raise WptResultError(f"{error_prefix}{result['statusText']}")
    if not isinstance(result.get("data"), dict):
        raise WptResultError("Invalid result response")
    return result["data"]


def fetch_result_json(
    test_id: str,
    api_key: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> dict:
    """Fetch the JSON result for a single WebPageTest test.

    Retries on 429/500/503 with exponential backoff.
    """
    url = get_json_result_url_for_test_id(test_id)
    headers = {WPT_API_KEY_HEADER: api_key} if api_key else {}

    last_error: Exception | None = None
    for attempt in range(MAX_RETRIES + 1):
        try:
            response = requests.get(url, headers=headers, timeout=timeout)

            if response.status_code == 200:
                try:
                    body = response.json()
                except ValueError:
                    raise WptResultError(f"Invalid result response for test {test_id}") from None
                return unwrap_result_json(body)

            if response.status_code in RETRYABLE_STATUS_CODES:
                retry_after = response.headers.get("Retry-After")
                if retry_after and response.status_code == 429:
                    wait_time = float(retry_after)
                else:
                    wait_time = RETRY_BASE_DELAY * (2**attempt)
                last_error = WptResultError(f"HTTP {response.status_code} for test {test_id}")
                if attempt < MAX_RETRIES:
                    time.sleep(wait_time)
                    continue

            raise WptResultError(
                f"HTTP {response.status_code} for test {test_id}: {response.text[:200]}"
            )

        except requests.RequestException as exc:
            last_error = exc
            if attempt < MAX_RETRIES:
                time.sleep(RETRY_BASE_DELAY * (2**attempt))
                continue

    raise WptResultError(f"Failed after {MAX_RETRIES + 1} attempts for test {test_id}: {last_error}")


def fetch_results(
    test_ids: list[str],
    api_key: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    verbose: bool = False,
) -> list[dict]:
    """Fetch several test results concurrently, returned in the order of test_ids."""
    if not test_ids:
        return []

    def fetch_single(test_id: str) -> dict:
        if verbose:
            print(f"  Fetching {get_result_url_for_test_id(test_id)}...", file=sys.stderr)
        return fetch_result_json(test_id, api_key, timeout)

    with ThreadPoolExecutor(max_workers=len(test_ids)) as executor:
        return list(executor.map(fetch_single, test_ids))


def get_result_runs(result: dict) -> list[dict]:
    """Return the runs of a result ordered by run index."""
    runs = result["runs"]
    if isinstance(runs, list):
        return list(runs)
    # Run indexes are JSON object keys ("1", "2", ..., "10").
    keys = list(runs)
    if all(str(key).isdigit() for key in keys):
        keys.sort(key=int)
    return [runs[key] for key in keys]


def create_response_header_getter(header_name: str) -> Callable[[dict], str]:
    """Build a getter for a response header of the first request in a run."""
    prefixes = (f"{header_name}: ", f"{header_name.lower()}: ")

    def get_response_header(run: dict) -> str:
        run_requests = run["firstView"]["requests"]
        if not run_requests or not run_requests[0]["headers"]["response"]:
            raise ResponseHeaderError("No response headers found")
        for header in run_requests[0]["headers"]["response"]:
            if header.startswith(prefixes):
                return header[len(header_name) + 2:]
        raise ResponseHeaderError(f"No response header {header_name} found")

    return get_response_header


get_server_timing_header = create_response_header_getter("Server-Timing")


def _create_server_timing_extractor(server_timing_metric: str) -> Callable[[dict], float | None]:
    token = f"{server_timing_metric};dur="

    def get_server_timing_value(run: dict) -> float | None:
        header = get_server_timing_header(run)
        token_index = header.find(token)
        if token_index < 0:
            raise ServerTimingMetricMissingError(
                f"Server-Timing metric {server_timing_metric} not present in run"
            )
        value = header[token_index + len(token):]
        next_index = value.find(",")
        if next_index >= 0:
            value = value[:next_index]
        return _leading_float(value)

    return get_server_timing_value


def bind_single_metric_extractor(metric: str) -> Callable[[dict], float | None]:
    """Map a single metric name to a function returning its value for a run.

    Raises UnsupportedMetricError for names outside the known vocabulary.
    """
    field = WPT_METRIC_FIELDS.get(metric)
    if field is not None:
        return lambda run: run["firstView"].get(field)

    if metric.startswith(SERVER_TIMING_PREFIX):
        return _create_server_timing_extractor(metric[len(SERVER_TIMING_PREFIX):])

    raise UnsupportedMetricError(f"Unsupported metric {metric}")


def parse_metric_expression(expression: str) -> tuple[list[str], list[str]]:
    """Split "A + B - C" into the metric names to add and to subtract.

    Operators must be surrounded by single spaces: "LCP-TTFB" is one name.
    """
    to_add: list[str] = []
    to_subtract: list[str] = []
    for term in expression.split(" + "):
        first, *rest = term.split(" - ")
        to_add.append(first.strip())
        to_subtract.extend(part.strip() for part in rest)
    return to_add, to_subtract


def resolve_metric_expression(expression: str) -> Callable[[dict], float | None]:
    """Resolve a metric expression into a function computing its value for a run.

    The combined value is None as soon as any of its terms is None.
    """
    to_add, to_subtract = parse_metric_expression(expression)
    add_extractors = [bind_single_metric_extractor(name) for name in to_add]
    subtract_extractors = [bind_single_metric_extractor(name) for name in to_subtract]

    if len(add_extractors) == 1 and not subtract_extractors:
        return add_extractors[0]

    def get_combined_value(run: dict) -> float | None:
        add_values = [extract(run) for extract in add_extractors]
        subtract_values = [extract(run) for extract in subtract_extractors]
        if any(value is None for value in add_values + subtract_values):
            return None
        return sum(add_values) - sum(subtract_values)

    return get_combined_value


def build_metric_record(name: str, values: list[float | None], percentiles: list[int] = MEDIAN_PERCENTILES) -> dict:
    record: dict[str, object] = {"name": name, "median": median(values)}
    for percentile_value in percentiles:
        record[f"p{percentile_value}"] = percentile(percentile_value, values)
    record["runs"] = values
    return record


def extract_metrics(result: dict, *metrics: str, percentiles: list[int] = MEDIAN_PERCENTILES) -> list[dict]:
    """Extract one metric record per requested expression from a result.

    Every record has exactly one value per run; runs where the value cannot
    be determined hold None. Only a missing named Server-Timing metric
    aborts the extraction.
    """
    if not metrics:
        return []

    runs = get_result_runs(result)
    records = []
    for metric in metrics:
        get_metric_value = resolve_metric_expression(metric)
        values: list[float | None] = []
        for run in runs:
            try:
                value = get_metric_value(run)
            except SOFT_EXTRACTION_ERRORS:
                value = None
            values.append(value)
        records.append(build_metric_record(metric, values, percentiles))
    return records


def extract_server_timing_metrics(result: dict, percentiles: list[int] = MEDIAN_PERCENTILES) -> list[dict]:
    """Extract every Server-Timing metric reported by the runs of a result.

    The first run defines the metric set; every other run must report
    exactly the same metrics. An entry without a numeric duration, such as
    ``cache;desc=hit``, records ``None`` for that run.
    """
    runs = get_result_runs(result)
    if not runs:
        return []

    headers = [get_server_timing_header(run) for run in runs]

    metric_runs: dict[str, list[float | None]] = {}
    for entry in headers[0].split(","):
        entry = entry.strip()
        separator_index = entry.find(";")
        if separator_index < 0:
            raise InvalidServerTimingHeaderError(f"Invalid Server-Timing header {headers[0]}")
        metric_runs[entry[:separator_index]] = []

    for header in headers:
        for entry in header.split(","):
            parts = entry.split(";")
            if len(parts) != 2:
                raise InvalidServerTimingHeaderError(f"Invalid Server-Timing header {header}")
            name = parts[0].strip()
            value = _leading_float(parts[1].replace("dur=", ""))
            if name not in metric_runs:
                raise ServerTimingConsistencyError(
                    f"Invalid Server-Timing header: Metric {name} not present in every run"
                )
            metric_runs[name].append(value)

    records = []
    for name, values in metric_runs.items():
        if len(values) != len(runs):
            raise ServerTimingConsistencyError(
                f"Invalid Server-Timing header: Metric {name} not present in every run"
            )
        records.append(build_metric_record(name, values, percentiles))
    return records


def merge_metrics(*metrics: dict, percentiles: list[int] = MEDIAN_PERCENTILES) -> dict:
    """Pool the runs of same-named metric records from separate results."""
    if not metrics:
        raise MetricMergeError("No metrics to merge")

    name = metrics[0]["name"]
    merged_runs: list[float | None] = []
    for metric in metrics:
        if metric["name"] != name:
            raise MetricMergeError(f"Cannot merge metric {metric['name']} into metric {name}")
        merged_runs.extend(metric["runs"])
    return build_metric_record(name, merged_runs, percentiles)


# ---------------------------------------------------------------------------
# URL Benchmarking
# ---------------------------------------------------------------------------


def validate_url(url: str) -> str | None:
    """Validate and normalize a URL. Returns the URL or None if invalid."""
    url = url.strip()
    if not url or url.startswith("#"):
        return None

    # Add scheme if missing
    if not url.startswith(("http://", "https://")):
        url = "https://" + url

    parsed = urlparse(url)
    if not parsed.netloc:
        return None
    return url


def load_urls(url_args: list[str] | None, file_path: str | None) -> list[str]:
    """Load URLs from repeated --url args and/or a file with one URL per line."""
    raw_urls: list[str] = list(url_args or [])

    if file_path:
        path = Path(file_path)
        if not path.is_file():
            print(f"Error: URL file not found: {file_path}", file=sys.stderr)
            sys.exit(1)
        raw_urls.extend(path.read_text().splitlines())

    validated: list[str] = []
    for raw in raw_urls:
        cleaned = validate_url(raw)
        if cleaned:
            validated.append(cleaned)
        elif raw.strip() and not raw.strip().startswith("#"):
            print(f"Warning: skipping invalid URL: {raw.strip()}", file=sys.stderr)

    return validated


def parse_server_timing_header(header: str) -> dict[str, float]:
    """Parse a Server-Timing header value into {metric name: duration}.

    Entries without a usable duration are skipped.
    """
    metrics: dict[str, float] = {}
    for timing in header.split(","):
        name, separator, value = timing.strip().partition(";dur=")
        if not separator:
            continue
        duration = _leading_float(value)
        if duration is not None:
            metrics[name] = duration
    return metrics


def _timed_request(url: str, timeout: float) -> tuple[int, float, dict[str, float]]:
    # Random query arg so that page caches are bypassed.
    params = {"rnd": str(random.random())}
    started = time.perf_counter()
    response = requests.get(url, params=params, timeout=timeout)
    response_time = (time.perf_counter() - started) * 1000
    server_timing = parse_server_timing_header(response.headers.get("Server-Timing", ""))
    return response.status_code, response_time, server_timing


def benchmark_url(
    url: str,
    number: int = DEFAULT_NUMBER,
    concurrency: int = DEFAULT_CONCURRENCY,
    timeout: float = DEFAULT_TIMEOUT,
    verbose: bool = False,
) -> dict:
    """Request url `number` times with up to `concurrency` requests in flight.

    Returns response times (ms), the count of 200 responses and the
    Server-Timing values of every response keyed by metric name.
    """
    response_times: list[float] = []
    metrics: dict[str, list[float]] = {}
    complete_requests = 0
    failed_requests = 0

    def record(status_code: int, response_time: float, server_timing: dict[str, float]) -> None:
        nonlocal complete_requests
        if status_code == 200:
            complete_requests += 1
        response_times.append(response_time)
        for name, value in server_timing.items():
            metrics.setdefault(name, []).append(value)

    def record_failure(exc: requests.RequestException) -> None:
        nonlocal failed_requests
        failed_requests += 1
        if verbose:
            print(f"  Request to {url} failed: {exc}", file=sys.stderr)

    effective_workers = min(concurrency, number)
    if effective_workers <= 1:
        for _ in range(number):
            try:
                record(*_timed_request(url, timeout))
            except requests.RequestException as exc:
                record_failure(exc)
    else:
        with ThreadPoolExecutor(max_workers=effective_workers) as executor:
            futures = [executor.submit(_timed_request, url, timeout) for _ in range(number)]
            for future in as_completed(futures):
                try:
                    record(*future.result())
                except requests.RequestException as exc:
                    record_failure(exc)

    if not response_times:
        raise BenchmarkError(f"No responses received from {url} ({failed_requests} failed requests)")

    return {
        "url": url,
        "complete_requests": complete_requests,
        "response_times": response_times,
        "metrics": metrics,
    }


def _variance_columns(values: list[float]) -> list[object]:
    """Standard deviation, MAD and IQR columns, blank when there are no values."""
    if not values:
        return ["", "", ""]
    return [
        round(standard_deviation(values, use_population=True), 2),
        round(median_absolute_deviation(values), 2),
        round(percentile(75, values) - percentile(25, values), 2),
    ]


def build_benchmark_table(
    results: list[dict],
    number: int,
    show_percentiles: bool = False,
    show_variance: bool = False,
) -> tuple[list[str], list[list[object]]]:
    """Build headings and rows (one per URL) for benchmark results."""
    percentiles = KEY_PERCENTILES if show_percentiles else MEDIAN_PERCENTILES
    labels = [f"p{value}" for value in percentiles] if show_percentiles else ["median"]

    metric_names: list[str] = []
    for result in results:
        for name in result["metrics"]:
            if name not in metric_names:
                metric_names.append(name)

    variance_labels = ["SD", "MAD", "IQR"] if show_variance else []
    headings = ["URL", "Success Rate"]
    for subject in ["Response Time", *metric_names]:
        headings.extend(f"{subject} ({label})" for label in labels + variance_labels)

    rows = []
    for result in results:
        completion_rate = round(100 * result["complete_requests"] / (number or 1), 1)
        row: list[object] = [result["url"], f"{completion_rate}%"]

        response_times = result["response_times"]
        row.extend(round(percentile(value, response_times), 2) for value in percentiles)
        if show_variance:
            row.extend(_variance_columns(response_times))

        for name in metric_names:
            values = result["metrics"].get(name, [])
            if values:
                row.extend(round(percentile(value, values), 2) for value in percentiles)
            else:
                row.extend("" for _ in percentiles)
            if show_variance:
                row.extend(_variance_columns(values))

        rows.append(row)

    return headings, rows


# ---------------------------------------------------------------------------
# Output Formats
# ---------------------------------------------------------------------------


def build_table_data(headings: list[str], data: list[list[object]], rows_as_columns: bool = False) -> list[list[object]]:
    """Combine headings and rows into a grid, optionally transposed."""
    for row in data:
        if len(row) != len(headings):
            raise ValueError("Invalid table data.")

    table_data = [list(headings), *[list(row) for row in data]]
    if rows_as_columns:
        return [list(column) for column in zip(*table_data)]
    return table_data


def _cell_text(value: object) -> str:
    return "" if value is None else str(value)


def _format_csv(table_data: list[list[object]]) -> str:
    dataframe = pd.DataFrame(table_data, dtype=object)
    return dataframe.to_csv(index=False, header=False, lineterminator="\n").rstrip("\n")


def _format_markdown(table_data: list[list[object]]) -> str:
    # First column left-aligned, all remaining (numeric) columns right-aligned.
    header, *rows = table_data
    align = [":--"] + ["--:"] * (len(header) - 1)

    def format_row(row: list[object]) -> str:
        cells = [_cell_text(value).replace("|", "\\|") for value in row]
        return "| " + " | ".join(cells) + " |"

    lines = [format_row(header), "| " + " | ".join(align) + " |"]
    lines.extend(format_row(row) for row in rows)
    return "\n".join(lines)


def _format_rich_table(table_data: list[list[object]]) -> Table:
    header, *rows = table_data
    table = Table(show_lines=False)
    for index, heading in enumerate(header):
        table.add_column(_cell_text(heading), justify="left" if index == 0 else "right")
    for row in rows:
        table.add_row(*(_cell_text(value) for value in row))
    return table


def format_table(
    headings: list[str],
    data: list[list[object]],
    output_format: str = OUTPUT_FORMAT_TABLE,
    rows_as_columns: bool = False,
) -> str | Table:
    """Render rows as CSV/Markdown text, or as a rich Table for the terminal."""
    table_data = build_table_data(headings, data, rows_as_columns)
    if output_format == OUTPUT_FORMAT_CSV:
        return _format_csv(table_data)
    if output_format == OUTPUT_FORMAT_MD:
        return _format_markdown(table_data)
    return _format_rich_table(table_data)


def output(renderable: str | Table) -> None:
    """Write command output to stdout."""
    if isinstance(renderable, str):
        print(renderable)
    else:
        Console(highlight=False).print(renderable)


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
        "format": "format",
        "show_percentiles": "show_percentiles",
        "include_runs": "include_runs",
        "rows_as_columns": "rows_as_columns",
        "concurrency": "concurrency",
        "number": "number",
        "show_variance": "show_variance",
        "timeout": "timeout",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", [])) | set(getattr(args, GLOBAL_EXPLICIT_ATTR, []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if not getattr(args, "api_key", None):
        env_key = os.environ.get("WPT_API_KEY")
        if env_key:
            args.api_key = env_key

    return args


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


def _record_explicit(namespace: argparse.Namespace, attr: str, dest: str) -> None:
    explicit = list(getattr(namespace, attr, []))
    explicit.append(dest)
    setattr(namespace, attr, explicit)


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided.

    Options on the top-level parser record into ``_explicit_global_args``.
    argparse copies a subcommand's namespace over the parent's, so a single
    shared attribute would lose the global flags.
    """

    def __init__(self, option_strings, dest, explicit_attr="_explicit_args", **kwargs):
        super().__init__(option_strings=option_strings, dest=dest, **kwargs)
        self.explicit_attr = explicit_attr

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        _record_explicit(namespace, self.explicit_attr, self.dest)


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None, explicit_attr="_explicit_args"):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)
        self.explicit_attr = explicit_attr

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        _record_explicit(namespace, self.explicit_attr, self.dest)


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="wpp-research",
        description="WordPress performance research CLI tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--api-key", dest="api_key", action=TrackingAction, explicit_attr=GLOBAL_EXPLICIT_ATTR, default=None, help="WebPageTest API key (or set WPT_API_KEY env var)")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, explicit_attr=GLOBAL_EXPLICIT_ATTR, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, explicit_attr=GLOBAL_EXPLICIT_ATTR, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, explicit_attr=GLOBAL_EXPLICIT_ATTR, default=False, help="Verbose output to stderr")
    parser.add_argument("--timeout", dest="timeout", action=TrackingAction, explicit_attr=GLOBAL_EXPLICIT_ATTR, type=float, default=DEFAULT_TIMEOUT, help="HTTP request timeout in seconds")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- wpt-metrics ---
    metrics_parser = subparsers.add_parser("wpt-metrics", help="Get performance metrics for a WebPageTest result")
    metrics_parser.add_argument("-t", "--test", dest="test", nargs="+", required=True, help="WebPageTest test result ID or URL; pass several to merge their runs")
    metrics_parser.add_argument("-m", "--metrics", dest="metrics", nargs="+", required=True, help='One or more WebPageTest metrics, e.g. "LCP" or "LCP - TTFB"')
    metrics_parser.add_argument("-f", "--format", dest="format", action=TrackingAction, default=OUTPUT_FORMAT_TABLE, choices=VALID_OUTPUT_FORMATS, help="Output format: table, csv, or md")
    metrics_parser.add_argument("--show-percentiles", dest="show_percentiles", action=TrackingStoreTrueAction, default=False, help="Show key percentiles instead of only the median")
    metrics_parser.add_argument("-i", "--include-runs", dest="include_runs", action=TrackingStoreTrueAction, default=False, help="Also show the values of every run")
    metrics_parser.add_argument("-r", "--rows-as-columns", dest="rows_as_columns", action=TrackingStoreTrueAction, default=False, help="Swap rows and columns")

    # --- wpt-server-timing ---
    server_timing_parser = subparsers.add_parser("wpt-server-timing", help="Get Server-Timing metrics for a WebPageTest result")
    server_timing_parser.add_argument("-t", "--test", dest="test", nargs="+", required=True, help="WebPageTest test result ID or URL; pass several to merge their runs")
    server_timing_parser.add_argument("-f", "--format", dest="format", action=TrackingAction, default=OUTPUT_FORMAT_TABLE, choices=VALID_OUTPUT_FORMATS, help="Output format: table, csv, or md")
    server_timing_parser.add_argument("-i", "--include-runs", dest="include_runs", action=TrackingStoreTrueAction, default=False, help="Also show the values of every run")
    server_timing_parser.add_argument("-r", "--rows-as-columns", dest="rows_as_columns", action=TrackingStoreTrueAction, default=False, help="Swap rows and columns")

    # --- benchmark-server-timing ---
    benchmark_parser = subparsers.add_parser("benchmark-server-timing", help="Run Server-Timing benchmarks for one or more URLs")
    benchmark_parser.add_argument("-u", "--url", dest="url", action="append", default=[], help="URL to benchmark; repeat for several URLs")
    benchmark_parser.add_argument("-f", "--file", dest="file", default=None, help="File with one URL per line")
    benchmark_parser.add_argument("-c", "--concurrency", dest="concurrency", action=TrackingAction, type=int, default=DEFAULT_CONCURRENCY, help="Number of requests to make at a time")
    benchmark_parser.add_argument("-n", "--number", dest="number", action=TrackingAction, type=int, default=DEFAULT_NUMBER, help="Number of requests to perform per URL")
    benchmark_parser.add_argument("-o", "--output", dest="format", action=TrackingAction, default=OUTPUT_FORMAT_TABLE, choices=VALID_OUTPUT_FORMATS, help="Output format: table, csv, or md")
    benchmark_parser.add_argument("--show-percentiles", dest="show_percentiles", action=TrackingStoreTrueAction, default=False, help="Show key percentiles instead of only the median")
    benchmark_parser.add_argument("--show-variance", dest="show_variance", action=TrackingStoreTrueAction, default=False, help="Show standard deviation, MAD and IQR")
    # SUPPRESS keeps a global --timeout from being reset to the default.
    benchmark_parser.add_argument("--timeout", dest="timeout", action=TrackingAction, type=float, default=argparse.SUPPRESS, help="Request timeout in seconds")

    return parser


# ---------------------------------------------------------------------------
# Subcommand: wpt-metrics
# ---------------------------------------------------------------------------


def _parse_test_ids(test_args: list[str]) -> list[str]:
    try:
        return [parse_wpt_test_id(test) for test in test_args]
    except WptResultError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


def _merge_result_metrics(metric_sets: list[list[dict]], percentiles: list[int]) -> list[dict]:
    """Merge same-named metric records across results, keeping first-seen order."""
    grouped: dict[str, list[dict]] = {}
    for metric_set in metric_sets:
        for metric in metric_set:
            grouped.setdefault(metric["name"], []).append(metric)
    return [
        merge_metrics(*group, percentiles=percentiles) if len(group) > 1 else group[0]
        for group in grouped.values()
    ]


def cmd_wpt_metrics(args: argparse.Namespace) -> None:
    """Print metrics of one or more WebPageTest results."""
    test_ids = _parse_test_ids(args.test)
    percentiles = KEY_PERCENTILES if args.show_percentiles else MEDIAN_PERCENTILES

    # Several tests with the same configuration can be merged to get past
    # the per-test limit of 9 runs.
    results = fetch_results(test_ids, args.api_key, args.timeout, verbose=args.verbose)
    total_runs = sum(len(get_result_runs(result)) for result in results)
    merged = _merge_result_metrics(
        [extract_metrics(result, *args.metrics, percentiles=percentiles) for result in results],
        percentiles,
    )

    if args.show_percentiles:
        headings = ["Metric", *(f"p{value}" for value in percentiles)]
    else:
        headings = ["Metric", "Median"]
    if args.include_runs:
        headings.extend(f"Run {index + 1}" for index in range(total_runs))

    rows = []
    for metric in merged:
        if args.show_percentiles:
            row = [metric["name"], *(round(metric[f"p{value}"], 2) for value in percentiles)]
        else:
            row = [metric["name"], round(metric["median"], 2)]
        if args.include_runs:
            row.extend(metric["runs"])
        rows.append(row)

    output(format_table(headings, rows, args.format, args.rows_as_columns))


# ---------------------------------------------------------------------------
# Subcommand: wpt-server-timing
# ---------------------------------------------------------------------------


def cmd_wpt_server_timing(args: argparse.Namespace) -> None:
    """Print Server-Timing metrics of one or more WebPageTest results."""
    test_ids = _parse_test_ids(args.test)

    results = fetch_results(test_ids, args.api_key, args.timeout, verbose=args.verbose)
    total_runs = sum(len(get_result_runs(result)) for result in results)
    merged = _merge_result_metrics(
        [extract_server_timing_metrics(result) for result in results],
        MEDIAN_PERCENTILES,
    )

    # Each test is consistent on its own, but separate tests can still
    # report different metric sets.
    for metric in merged:
        if len(metric["runs"]) != total_runs:
            raise ServerTimingConsistencyError(
                f"Invalid Server-Timing header: Metric {metric['name']} not present in every run"
            )

    headings = ["Metric", "Median"]
    if args.include_runs:
        headings.extend(f"Run {index + 1}" for index in range(total_runs))

    rows = []
    for metric in merged:
        row = [metric["name"], metric["median"]]
        if args.include_runs:
            row.extend(metric["runs"])
        rows.append(row)

    output(format_table(headings, rows, args.format, args.rows_as_columns))


# ---------------------------------------------------------------------------
# Subcommand: benchmark-server-timing
# ---------------------------------------------------------------------------


def cmd_benchmark_server_timing(args: argparse.Namespace) -> None:
    """Benchmark URLs and print response time and Server-Timing statistics."""
    if args.number < 1 or args.concurrency < 1:
        print("Error: --number and --concurrency must be at least 1", file=sys.stderr)
        sys.exit(1)

    urls = load_urls(args.url, args.file)
    # Per-URL progress is only useful when URLs come from a file.
    log_progress = args.verbose or (not args.url and bool(args.file))

    results = []
    for url in urls:
        if log_progress:
            print(f"Benchmarking URL {url} ... ", end="", file=sys.stderr, flush=True)
        try:
            results.append(benchmark_url(url, args.number, args.concurrency, args.timeout, verbose=args.verbose))
        except BenchmarkError as exc:
            print(f"Error: {exc}.", file=sys.stderr)
            continue
        if log_progress:
            print("Success.", file=sys.stderr)

    if not results:
        print(
            "Error: You need to provide a URL to benchmark via one or more --url (-u) arguments, "
            "or a file with one or more URLs via the --file (-f) argument.",
            file=sys.stderr,
        )
        sys.exit(1)

    headings, rows = build_benchmark_table(results, args.number, args.show_percentiles, args.show_variance)
    output(format_table(headings, rows, args.format, rows_as_columns=True))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    # Load config
    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    # Apply profile and config defaults
    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)

    # Dispatch to subcommand
    commands = {
        "wpt-metrics": cmd_wpt_metrics,
        "wpt-server-timing": cmd_wpt_server_timing,
        "benchmark-server-timing": cmd_benchmark_server_timing,
    }

    handler = commands.get(args.command)
    if not handler:
        parser.print_help()
        sys.exit(1)

    try:
        handler(args)
    except WptResearchError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
