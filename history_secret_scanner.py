#!/usr/bin/env python3
"""
===================================================================
GIT HISTORY SECRET SCANNER
===================================================================

PURPOSE:
    Walks the complete commit history of one or more Git repositories
    (a single repository, every repository of a GitHub user, or every
    repository of a GitHub organization) and reports secrets that were
    committed at any point in time, even if they were removed later.

FEATURES:
    ✓ Worker pool draining a repository queue (asyncio + thread executor)
    ✓ History traversal oldest -> newest, one added diff chunk at a time
    ✓ Pattern detection with per-line context windows
    ✓ Entropy detection over base64 and hex character runs
    ✓ Noise-weighted rule sets, filterable by noise range
    ✓ Custom rules from a JSON rules file
    ✓ Per-repository secret deduplication across the whole history
    ✓ User / organization expansion through the GitHub API (PyGithub)
    ✓ Rate limiting & exponential backoff for GitHub API
    ✓ Structured JSON logging and JSON findings report

DETECTION METHODS:
    1. Pattern matching (regex), first match per rule per line
    2. Shannon entropy of base64 / hex runs (high entropy = likely key)

SECURITY NOTICE:
    This scanner NEVER attempts to use discovered credentials.
    Report findings to security teams immediately.

REQUIREMENTS:
    Install dependencies:
        python3 -m pip install -e .
    or
        pip install aiofiles PyGithub gitpython tqdm

USAGE:
    # Scan a local repository
    python history_secret_scanner.py --repo /path/to/repo

    # Scan every repository of a user with entropy checks
    export GITHUB_TOKEN="ghp_your_token_here"
    python history_secret_scanner.py --user octocat --mode both

    # Scan an organization and its members, report each secret once
    python history_secret_scanner.py --org my-org --include-members --skip-duplicates

CONFIGURATION:
    Set via environment variables (CLI flags take precedence):
    - GITHUB_TOKEN: GitHub personal access token
    - SCAN_THREADS: Repositories scanned in parallel (default: 5)
    - SCAN_CONTEXT: Context lines around a match (default: 2)
    - SCAN_MODE: regex|entropy|both (default: regex)
    - SCAN_NOISE: Noise range of active rules, e.g. 1-3 (default: 1-5)
    - SKIP_DUPLICATES: Report each secret once per repository (default: false)
    - RULES_FILE: Path to a JSON rules file
    - CACHE_DIR: Directory for cloned repositories (default: temporary)
    - CLONE_TIMEOUT_SECONDS: Kill a clone or fetch after this long (default: 600)
    - OUTPUT_FILE: Findings report path (default: none)
    - LOG_FORMAT: text|json (default: text)

===================================================================
"""
import argparse
import asyncio
import base64
import functools
import hashlib
import json
import logging
import math
import os
import re
import shutil
import sys
import tempfile
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

import aiofiles
import git
from github import Auth, Github, GithubException, RateLimitExceededException
from tqdm import tqdm

__version__ = "1.0.0"

# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

# Environment-driven configuration
GITHUB_TOKEN = os.environ.get("GITHUB_TOKEN", "")
SCAN_THREADS = int(os.environ.get("SCAN_THREADS", "5"))
SCAN_CONTEXT = int(os.environ.get("SCAN_CONTEXT", "2"))
SCAN_MODE = os.environ.get("SCAN_MODE", "regex")  # regex|entropy|both
SCAN_NOISE = os.environ.get("SCAN_NOISE", "1-5")
SKIP_DUPLICATES = os.environ.get("SKIP_DUPLICATES", "false").lower() == "true"
RULES_FILE = os.environ.get("RULES_FILE", "")
CACHE_DIR = os.environ.get("CACHE_DIR", "")
OUTPUT_FILE = os.environ.get("OUTPUT_FILE", "")
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # text|json
GITHUB_BASE_URL = os.environ.get("GITHUB_BASE_URL", "https://github.com")

# GitHub API rate limiting
GITHUB_API_RATE_LIMIT = int(os.environ.get("GITHUB_API_RATE_LIMIT", "5000"))  # requests per hour
GITHUB_API_BACKOFF_BASE = float(os.environ.get("GITHUB_API_BACKOFF_BASE", "2.0"))
GITHUB_API_MAX_RETRIES = int(os.environ.get("GITHUB_API_MAX_RETRIES", "5"))

# Git transport
CLONE_TIMEOUT_SECONDS = int(os.environ.get("CLONE_TIMEOUT_SECONDS", "600"))
REMOTE_NOT_FOUND_MARKERS = ("not found", "does not exist", "could not read username", "authentication failed")

SCAN_MODES = ("regex", "entropy", "both")

# Rule noise bounds (1 = precise, 5 = very noisy)
NOISE_MIN = 1
NOISE_MAX = 5

# Entropy detection
B64_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/="
HEX_CHARS = "1234567890abcdefABCDEF"
B64_ENTROPY_THRESHOLD = 4.5
HEX_ENTROPY_THRESHOLD = 3.0
MIN_ENTROPY_STRING_LENGTH = 20
MIN_ENTROPY_CALC_LENGTH = 2

ENTROPY_REASONS = {
    "base64": "High entropy base64 string",
    "hex": "High entropy hex string",
}


# ===================================================================
# LOGGING SETUP
# ===================================================================

class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add custom fields
        if hasattr(record, 'repo'):
            log_data["repo"] = record.repo
        if hasattr(record, 'commit'):
            log_data["commit"] = record.commit
        if hasattr(record, 'finding_count'):
            log_data["finding_count"] = record.finding_count

        return json.dumps(log_data)


def setup_logging(log_format: str = "text") -> logging.Logger:
    """Setup logging with either text or JSON format."""
    logger = logging.getLogger(__name__)
    logger.setLevel(logging.INFO)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    logger.addHandler(handler)
    return logger


logger = setup_logging(LOG_FORMAT)


# ===================================================================
# ERRORS
# ===================================================================

class ScannerError(Exception):
    """Base class for all scanner failures."""


class ConfigError(ScannerError):
    """Invalid command line or environment configuration."""


class RuleError(ScannerError):
    """A rule definition could not be used."""


class RepositoryError(ScannerError):
    """A repository could not be opened."""


class RepositoryNotFound(RepositoryError):
    pass


class EmptyRepository(RepositoryError):
    pass


class TransportError(RepositoryError):
    pass


class CommitEnumerationError(ScannerError):
    pass


class ChangeEnumerationError(ScannerError):
    pass


class DiffError(ScannerError):
    pass


class CompletionError(ScannerError):
    """The outstanding-work counter was used out of protocol."""


# ===================================================================
# RATE LIMITING & BACKOFF
# ===================================================================

@dataclass
class RateLimitState:
    """Track rate limit state for GitHub API."""
    requests_remaining: int = GITHUB_API_RATE_LIMIT
    reset_time: datetime = field(default_factory=datetime.now)
    total_requests: int = 0
    total_waits: int = 0


class GitHubRateLimiter:
    """Rate limiter with exponential backoff for GitHub API."""

    def __init__(self, requests_per_hour: int = GITHUB_API_RATE_LIMIT):
        self.requests_per_hour = requests_per_hour
        self.min_interval = 3600.0 / requests_per_hour  # seconds between requests
        self.last_request_time = 0.0
        self.state = RateLimitState(requests_remaining=requests_per_hour)
        self.lock = asyncio.Lock()

    async def acquire(self):
        """Acquire permission to make a request with rate limiting."""
        async with self.lock:
            now = time.time()

            time_since_last = now - self.last_request_time
            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                logger.debug(f"Rate limiting: waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)
                self.state.total_waits += 1

            self.last_request_time = time.time()
            self.state.total_requests += 1
            self.state.requests_remaining -= 1

            # Reset counter every hour
            if datetime.now() >= self.state.reset_time:
                self.state.requests_remaining = self.requests_per_hour
                self.state.reset_time = datetime.now() + timedelta(hours=1)

    async def handle_rate_limit_error(self, reset_timestamp: Optional[int] = None):
        """Handle rate limit exceeded error by sleeping until the reset time."""
        if reset_timestamp:
            wait_until = datetime.fromtimestamp(reset_timestamp)
            wait_seconds = (wait_until - datetime.now()).total_seconds()
        else:
            wait_seconds = 60

        wait_seconds = max(wait_seconds, 1)
        logger.warning(f"Rate limit exceeded. Waiting {wait_seconds:.0f}s until reset")
        await asyncio.sleep(wait_seconds)

        self.state.requests_remaining = self.requests_per_hour
        self.state.reset_time = datetime.now() + timedelta(hours=1)

    def get_stats(self) -> Dict[str, Any]:
        """Get rate limiter statistics."""
        return {
            "total_requests": self.state.total_requests,
            "requests_remaining": self.state.requests_remaining,
            "total_waits": self.state.total_waits,
            "reset_time": self.state.reset_time.isoformat()
        }


async def github_api_call_with_backoff(
    func,
    *args,
    rate_limiter: Optional[GitHubRateLimiter] = None,
    max_retries: int = GITHUB_API_MAX_RETRIES,
    **kwargs
):
    """
    Execute GitHub API call with exponential backoff on rate limit errors.

    Args:
        func: Function to call (can be sync or async); sync functions run
              in the default executor since PyGithub pages over the network
        *args: Positional arguments for func
        rate_limiter: Limiter to acquire before each attempt
        max_retries: Maximum number of retry attempts
        **kwargs: Keyword arguments for func

    Returns:
        Result of func call

    Raises:
        The last GitHub error once all retries are exhausted
    """
    for attempt in range(max_retries):
        try:
            if rate_limiter is not None:
                await rate_limiter.acquire()

            if asyncio.iscoroutinefunction(func):
                return await func(*args, **kwargs)
            return await asyncio.get_running_loop().run_in_executor(
                None, functools.partial(func, *args, **kwargs)
            )

        except RateLimitExceededException as e:
            if attempt == max_retries - 1:
                raise
            reset_timestamp = None
            if e.headers and "x-ratelimit-reset" in e.headers:
                reset_timestamp = int(e.headers["x-ratelimit-reset"])
            if rate_limiter is not None:
                await rate_limiter.handle_rate_limit_error(reset_timestamp)

        except GithubException as e:
            # 404 and friends are answers, not transient failures
            if e.status != 403 or 'rate limit' not in str(e).lower():
                raise
            if attempt == max_retries - 1:
                raise

            wait_time = GITHUB_API_BACKOFF_BASE ** attempt
            logger.warning(f"GitHub API error (attempt {attempt + 1}/{max_retries}): {e}")
            logger.info(f"Backing off for {wait_time:.1f}s")
            await asyncio.sleep(wait_time)

    raise ScannerError(f"GitHub API call failed after {max_retries} attempts")


# ===================================================================
# RULES
# ===================================================================

@dataclass(frozen=True)
class Rule:
    """A named pattern with a false-positive weight."""
    reason: str
    pattern: re.Pattern
    noise: int = NOISE_MIN


class SecretPatterns:
    """Compiled regex patterns backing the default rule set."""

    AWS_ACCESS_KEY_ID = re.compile(r'\b(AKIA|ASIA|AGPA|AIDA)[A-Z0-9]{16}\b')
    AWS_SECRET_ACCESS_KEY = re.compile(
        r'(?i)aws_?secret_?access_?key\s*[:=]\s*["\']?[A-Za-z0-9/+=]{40}["\']?'
    )
    GITHUB_TOKEN = re.compile(r'\b(ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9]{36}\b')
    GITHUB_FINE_GRAINED_PAT = re.compile(r'\bgithub_pat_[A-Za-z0-9_]{22}_[A-Za-z0-9_]{59}\b')
    SLACK_TOKEN = re.compile(r'\bxox[pbar]-[0-9]{10,13}-[0-9]{10,13}-[A-Za-z0-9]{24,32}\b')
    SLACK_WEBHOOK = re.compile(r'https://hooks\.slack\.com/services/T[A-Za-z0-9_]{8,}/B[A-Za-z0-9_]{8,}/[A-Za-z0-9_]{24}')
    STRIPE_KEY = re.compile(r'\b(sk_live_[A-Za-z0-9]{24,}|rk_live_[A-Za-z0-9]{24,})\b')
    GOOGLE_API_KEY = re.compile(r'\bAIza[0-9A-Za-z_-]{35}\b')
    SENDGRID_KEY = re.compile(r'\bSG\.[A-Za-z0-9_-]{22}\.[A-Za-z0-9_-]{43}\b')
    TWILIO_KEY = re.compile(r'\bSK[a-f0-9]{32}\b')
    NPM_TOKEN = re.compile(r'\bnpm_[a-zA-Z0-9]{36}\b')
    PYPI_TOKEN = re.compile(r'\bpypi-AgEIcHlwaS5vcmc[A-Za-z0-9\-_]{50,}\b')
    OPENAI_API_KEY = re.compile(r'\b(sk-[a-zA-Z0-9]{20}T3BlbkFJ[a-zA-Z0-9]{20}|sk-proj-[a-zA-Z0-9_-]{43,})\b')
    PRIVATE_KEY_HEADER = re.compile(r'-----BEGIN (?:RSA |EC |DSA |OPENSSH |PGP |ENCRYPTED |)PRIVATE KEY( BLOCK)?-----')
    JWT_TOKEN = re.compile(r'\beyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\b')
    DATABASE_URI = re.compile(r'(?:postgres|postgresql|mysql|mariadb|mongodb(?:\+srv)?|redis)://[^:\s]+:[^@\s]+@[\w.-]+(?::\d+)?')
    BEARER_TOKEN = re.compile(r'(?i)bearer\s+[A-Za-z0-9\-_=]{20,}(?:\.[A-Za-z0-9\-_=]+){0,2}')
    ASSIGNMENT_SECRET = re.compile(
        r'(?i)\b(?:password|passwd|pwd|secret|token|api[_-]?key|apikey|access[_-]?key'
        r'|secret[_-]?key|client[_-]?secret|auth[_-]?token)\b\s*[:=]\s*["\']?[A-Za-z0-9\-._/+=]{8,200}["\']?'
    )
    GENERIC_HEX_KEY = re.compile(r'\b[a-f0-9]{32,64}\b')


DEFAULT_RULES: List[Rule] = [
    Rule("AWS access key ID", SecretPatterns.AWS_ACCESS_KEY_ID, 1),
    Rule("AWS secret access key", SecretPatterns.AWS_SECRET_ACCESS_KEY, 1),
    Rule("GitHub token", SecretPatterns.GITHUB_TOKEN, 1),
    Rule("GitHub fine-grained token", SecretPatterns.GITHUB_FINE_GRAINED_PAT, 1),
    Rule("Slack token", SecretPatterns.SLACK_TOKEN, 1),
    Rule("Slack webhook", SecretPatterns.SLACK_WEBHOOK, 1),
    Rule("Stripe live key", SecretPatterns.STRIPE_KEY, 1),
    Rule("Google API key", SecretPatterns.GOOGLE_API_KEY, 1),
    Rule("SendGrid API key", SecretPatterns.SENDGRID_KEY, 1),
    Rule("NPM token", SecretPatterns.NPM_TOKEN, 1),
    Rule("PyPI token", SecretPatterns.PYPI_TOKEN, 1),
    Rule("OpenAI API key", SecretPatterns.OPENAI_API_KEY, 1),
    Rule("Private key", SecretPatterns.PRIVATE_KEY_HEADER, 1),
    Rule("Twilio API key", SecretPatterns.TWILIO_KEY, 2),
    Rule("Database connection string", SecretPatterns.DATABASE_URI, 2),
    Rule("JSON web token", SecretPatterns.JWT_TOKEN, 3),
    Rule("Bearer token", SecretPatterns.BEARER_TOKEN, 3),
    Rule("Secret assignment", SecretPatterns.ASSIGNMENT_SECRET, 4),
    Rule("Generic hex key", SecretPatterns.GENERIC_HEX_KEY, 5),
]


def load_rules(filepath: str) -> List[Rule]:
    """
    Load rules from a JSON file.

    Expected format (a bare list is accepted too, keys are case-insensitive):
    {
      "rules": [
        {"reason": "Internal API key", "pattern": "myapi_[A-Za-z0-9]{32}", "noise": 2}
      ]
    }

    Args:
        filepath: Path to the rules JSON file

    Returns:
        List of rules, invalid entries skipped
    """
    rules = []

    try:
        with open(filepath, 'r') as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.warning(f"Rules file not found: {filepath}")
        return rules
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in rules file: {e}")
        return rules

    entries = data.get('rules', []) if isinstance(data, dict) else data

    for index, entry in enumerate(entries):
        try:
            rules.append(parse_rule(entry))
        except RuleError as e:
            logger.error(f"Skipping rule #{index} in {filepath}: {e}")

    logger.info(f"Loaded {len(rules)} rules from {filepath}")
    return rules


def parse_rule(entry: Any) -> Rule:
    """Build a Rule from one decoded rules-file entry."""
    if not isinstance(entry, dict):
        raise RuleError(f"expected an object, got {type(entry).__name__}")

    fields = {str(key).lower(): value for key, value in entry.items()}
    reason = fields.get('reason')
    regex = fields.get('pattern') or fields.get('rule') or fields.get('regex')

    if not reason:
        raise RuleError("no reason provided")
    if not regex:
        raise RuleError(f"{reason}: no pattern provided")

    try:
        noise = int(fields.get('noise', NOISE_MIN))
    except (TypeError, ValueError):
        raise RuleError(f"{reason}: noise must be an integer")

    try:
        compiled = re.compile(regex)
    except re.error as e:
        raise RuleError(f"{reason}: invalid regex: {e}")

    return Rule(reason=str(reason), pattern=compiled, noise=noise)


def parse_noise_range(value: str) -> Tuple[int, int]:
    """
    Parse a noise range such as "2-4", "3", "-2" or "4-".

    Open ends default to NOISE_MIN / NOISE_MAX.
    """
    text = value.strip()
    if text.isdigit():
        return int(text), int(text)

    match = re.fullmatch(r'(\d*)\s*-\s*(\d*)', text)
    if not match or not (match.group(1) or match.group(2)):
        raise ConfigError(f"Invalid noise range: {value!r}")

    low = int(match.group(1)) if match.group(1) else NOISE_MIN
    high = int(match.group(2)) if match.group(2) else NOISE_MAX
    if low > high:
        raise ConfigError(f"Invalid noise range: {value!r} (lower bound above upper bound)")
    return low, high


def filter_rules(rules: Sequence[Rule], noise_range: Tuple[int, int]) -> List[Rule]:
    """Keep the rules whose noise lies inside the inclusive range, order preserved."""
    low, high = noise_range
    return [rule for rule in rules if low <= rule.noise <= high]


# ===================================================================
# FINDINGS & DEDUPLICATION
# ===================================================================

@dataclass(frozen=True)
class ChangeUnit:
    """One added diff chunk of one file in one commit."""
    diff: str
    file_path: str
    commit_hash: str
    repo_name: str
    author: str = ""
    email: str = ""
    date: str = ""
    message: str = ""


@dataclass(frozen=True)
class Finding:
    reason: str
    secret: str
    span: Tuple[int, int]
    context: str
    repo_name: str
    file_path: str
    commit_hash: str
    author: str = ""
    email: str = ""
    date: str = ""
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["span"] = list(self.span)
        data["hash"] = calculate_secret_hash(self.secret)
        return data


def calculate_secret_hash(value: str) -> str:
    """
    Calculate a stable hash for a secret value for reporting.

    Args:
        value: Secret value to hash

    Returns:
        SHA256 hash of the value
    """
    return hashlib.sha256(value.encode('utf-8')).hexdigest()


def build_finding(reason: str, span: Tuple[int, int], context: str, change: ChangeUnit) -> Finding:
    """
    Assemble a Finding from a detector hit and the change it came from.

    Raises:
        ValueError: empty reason, or span not inside the context
    """
    if not reason:
        raise ValueError("finding reason must not be empty")
    start, end = span
    if not 0 <= start <= end <= len(context):
        raise ValueError(f"span {span} outside context of length {len(context)}")

    return Finding(
        reason=reason,
        secret=context[start:end],
        span=(start, end),
        context=context,
        repo_name=change.repo_name,
        file_path=change.file_path,
        commit_hash=change.commit_hash,
        author=change.author,
        email=change.email,
        date=change.date,
        message=change.message,
    )


class SecretLedger:
    """Thread-safe set of (repository, secret) pairs already reported in a run."""

    def __init__(self):
        self._seen: Set[Tuple[str, str]] = set()
        self._lock = threading.Lock()

    def exists(self, repo: str, secret: str) -> bool:
        with self._lock:
            return (repo, secret) in self._seen

    def record(self, repo: str, secret: str) -> None:
        with self._lock:
            self._seen.add((repo, secret))

    def record_if_absent(self, repo: str, secret: str) -> bool:
        """Record the pair and return True, or return False if it was already recorded."""
        key = (repo, secret)
        with self._lock:
            if key in self._seen:
                return False
            self._seen.add(key)
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


# ===================================================================
# DETECTION
# ===================================================================

@dataclass(frozen=True)
class EntropySettings:
    min_length: int = MIN_ENTROPY_STRING_LENGTH
    base64_threshold: float = B64_ENTROPY_THRESHOLD
    hex_threshold: float = HEX_ENTROPY_THRESHOLD

    def threshold_for(self, kind: str) -> float:
        return self.base64_threshold if kind == "base64" else self.hex_threshold


@dataclass(frozen=True)
class EntropyHit:
    substring: str
    offset: int
    kind: str


@dataclass(frozen=True)
class PatternMatch:
    reason: str
    secret: str
    span: Tuple[int, int]
    context: str


ENTROPY_CHARSETS = (
    ("base64", frozenset(B64_CHARS)),
    ("hex", frozenset(HEX_CHARS)),
)


def shannon_entropy(data: str) -> float:
    """
    Calculate Shannon entropy of a string (bits per character).

    High entropy (>4.5) often indicates cryptographic material.
    Low entropy (<3.5) typically indicates human-readable text.

    Args:
        data: String to analyze

    Returns:
        Entropy value in bits per character (0.0 to ~8.0)
    """
    if not data or len(data) < MIN_ENTROPY_CALC_LENGTH:
        return 0.0

    counts = Counter(data)
    probs = [count / len(data) for count in counts.values()]
    return -sum(p * math.log2(p) for p in probs if p > 0)


def find_charset_runs(word: str, charset: Set[str], min_length: int) -> List[Tuple[int, str]]:
    """Return (offset, run) for every maximal run of charset characters at least min_length long."""
    runs = []
    start = None
    for index, char in enumerate(word):
        if char in charset:
            if start is None:
                start = index
            continue
        if start is not None and index - start >= min_length:
            runs.append((start, word[start:index]))
        start = None

    if start is not None and len(word) - start >= min_length:
        runs.append((start, word[start:]))
    return runs


def detect_entropy(text: str, settings: Optional[EntropySettings] = None) -> List[EntropyHit]:
    """
    Flag base64 and hex runs whose entropy exceeds the configured thresholds.

    The text is split on whitespace and every word is tested against both
    charsets independently, so a hex run that is also valid base64 is checked
    against each threshold.

    Args:
        text: Diff text to analyze
        settings: Minimum run length and per-charset thresholds

    Returns:
        Hits in text order, base64 before hex within a word
    """
    settings = settings or EntropySettings()
    hits = []

    for word in re.finditer(r'\S+', text):
        for kind, charset in ENTROPY_CHARSETS:
            threshold = settings.threshold_for(kind)
            for start, run in find_charset_runs(word.group(0), charset, settings.min_length):
                if shannon_entropy(run) > threshold:
                    hits.append(EntropyHit(substring=run, offset=word.start() + start, kind=kind))

    return hits


def context_bounds(line_count: int, line_index: int, radius: int) -> Tuple[int, int]:
    """Half-open line range of the context window around line_index."""
    return max(0, line_index - radius), min(line_count, line_index + radius + 1)


def build_context(
    lines: Sequence[str],
    line_index: int,
    column: int,
    length: int,
    radius: int
) -> Tuple[str, Tuple[int, int]]:
    """
    Join the context window around a hit and locate the hit inside it.

    The span is derived from the window's line lengths, not searched for, so
    it stays exact when the same text appears on an earlier window line.
    """
    start, end = context_bounds(len(lines), line_index, radius)
    context = "\n".join(lines[start:end])
    offset = sum(len(line) + 1 for line in lines[start:line_index]) + column
    return context, (offset, offset + length)


def detect_patterns(text: str, rules: Sequence[Rule], context_radius: int) -> List[PatternMatch]:
    """
    Run every rule on every line and keep the first match per (rule, line).

    Args:
        text: Diff text to analyze
        rules: Active rule set, applied in order
        context_radius: Lines of context on each side of the matching line

    Returns:
        One PatternMatch per (line, rule) hit, line-major then rule order
    """
    lines = text.split("\n")
    matches = []

    for line_index, line in enumerate(lines):
        for rule in rules:
            match = rule.pattern.search(line)
            if match is None or not match.group(0):
                continue
            found = match.group(0)
            context, span = build_context(lines, line_index, match.start(), len(found), context_radius)
            matches.append(PatternMatch(reason=rule.reason, secret=found, span=span, context=context))

    return matches


class Detector:
    """Turns one change unit into findings, applying optional deduplication."""

    name = "detector"

    def __init__(self, context_radius: int = SCAN_CONTEXT, skip_duplicates: bool = False):
        self.context_radius = context_radius
        self.skip_duplicates = skip_duplicates

    def hits(self, text: str) -> Iterator[Tuple[str, Tuple[int, int], str]]:
        """Yield (reason, span, context) for each hit in text."""
        raise NotImplementedError

    def detect(self, change: ChangeUnit, ledger: Optional[SecretLedger] = None) -> List[Finding]:
        findings = []
        for reason, span, context in self.hits(change.diff):
            finding = build_finding(reason, span, context, change)
            if self.skip_duplicates and ledger is not None:
                if not ledger.record_if_absent(change.repo_name, finding.secret):
                    continue
            findings.append(finding)
        return findings


class PatternDetector(Detector):
    name = "regex"

    def __init__(self, rules: Sequence[Rule], context_radius: int = SCAN_CONTEXT, skip_duplicates: bool = False):
        super().__init__(context_radius, skip_duplicates)
        self.rules = list(rules)

    def hits(self, text: str) -> Iterator[Tuple[str, Tuple[int, int], str]]:
        for match in detect_patterns(text, self.rules, self.context_radius):
            yield match.reason, match.span, match.context


class EntropyDetector(Detector):
    name = "entropy"

    def __init__(
        self,
        settings: Optional[EntropySettings] = None,
        context_radius: int = SCAN_CONTEXT,
        skip_duplicates: bool = False
    ):
        super().__init__(context_radius, skip_duplicates)
        self.settings = settings or EntropySettings()

    def hits(self, text: str) -> Iterator[Tuple[str, Tuple[int, int], str]]:
        found = detect_entropy(text, self.settings)
        if not found:
            return
        lines = text.split("\n")
        for hit in found:
            # runs never contain whitespace, so a hit sits on a single line
            line_index = text.count("\n", 0, hit.offset)
            column = hit.offset - (text.rfind("\n", 0, hit.offset) + 1)
            context, span = build_context(lines, line_index, column, len(hit.substring), self.context_radius)
            yield ENTROPY_REASONS[hit.kind], span, context


def build_detectors(
    mode: str,
    rules: Sequence[Rule],
    context_radius: int,
    skip_duplicates: bool = False,
    entropy_settings: Optional[EntropySettings] = None
) -> List[Detector]:
    """Detectors for a scan mode, in the order they run on each diff."""
    if mode not in SCAN_MODES:
        raise ConfigError(f"Unknown scan mode: {mode!r} (expected one of {', '.join(SCAN_MODES)})")

    detectors: List[Detector] = []
    if mode in ("regex", "both"):
        detectors.append(PatternDetector(rules, context_radius, skip_duplicates))
    if mode in ("entropy", "both"):
        detectors.append(EntropyDetector(entropy_settings, context_radius, skip_duplicates))
    return detectors


# ===================================================================
# REPOSITORY HISTORY (GitPython)
# ===================================================================

@dataclass
class FileChange:
    """A file touched by a commit: a patch against the parent, or a whole blob for root commits."""
    path: str
    patch: Optional[bytes] = None
    blob: Optional[Any] = None


def is_binary_content(data: bytes, sample_size: int = 8192) -> bool:
    """
    Detect binary content by checking for null bytes and the ratio of
    non-text bytes in the first chunk.
    """
    chunk = data[:sample_size]
    if not chunk:
        return False
    if b'\x00' in chunk:
        return True

    text_chars = bytearray({7, 8, 9, 10, 12, 13, 27} | set(range(0x20, 0x100)) - {0x7f})
    non_text_count = sum(1 for byte in chunk if byte not in text_chars)
    return (non_text_count / len(chunk)) > 0.30


def extract_added_chunks(patch: str) -> List[str]:
    """
    Split a unified diff into runs of consecutive added lines.

    Header lines before the first hunk are ignored, and the leading "+" of
    each added line is removed.
    """
    chunks = []
    current: List[str] = []
    in_hunk = False

    for line in patch.split("\n"):
        if line.startswith("@@"):
            in_hunk = True
        elif in_hunk and line.startswith("+"):
            current.append(line[1:])
            continue

        if current:
            chunks.append("\n".join(current))
            current = []

    if current:
        chunks.append("\n".join(current))
    return chunks


class GitHistory:
    """Opens repositories (cloning remote ones into a cache) and walks their history."""

    def __init__(self, cache_dir: Path, token: str = "", base_url: str = GITHUB_BASE_URL):
        self.cache_dir = Path(cache_dir)
        self.token = token
        self.base_url = base_url.rstrip("/")

    def resolve_url(self, identifier: str) -> Optional[str]:
        """Clone URL for a remote identifier, or None if it does not look like one."""
        if identifier.startswith(("http://", "https://", "git@", "ssh://", "git://", "file://")):
            return identifier
        if re.fullmatch(r'[\w.-]+/[\w.-]+', identifier):
            return f"{self.base_url}/{identifier}.git"
        return None

    def git_env(self, url: str) -> Dict[str, str]:
        """
        Environment for git network commands.

        Prompts are disabled so an inaccessible remote fails instead of
        waiting for credentials. The token travels as an HTTP header through
        GIT_CONFIG_* variables, never in the remote URL, so it is not written
        to the cached clone's config.
        """
        env = {"GIT_TERMINAL_PROMPT": "0"}
        if self.token and url.startswith(self.base_url + "/") and url.startswith("https://"):
            credentials = base64.b64encode(f"x-access-token:{self.token}".encode()).decode()
            env.update({
                "GIT_CONFIG_COUNT": "1",
                "GIT_CONFIG_KEY_0": "http.extraHeader",
                "GIT_CONFIG_VALUE_0": f"Authorization: Basic {credentials}",
            })
        return env

    def open_repository(self, identifier: str) -> git.Repo:
        """
        Open a local repository or clone/update a remote one.

        Raises:
            RepositoryNotFound: path is not a repository, or remote does not exist
            EmptyRepository: repository has no commits
            TransportError: clone or fetch failed for another reason
        """
        local_path = Path(identifier).expanduser()
        if local_path.is_dir():
            try:
                repo = git.Repo(local_path)
            except (git.InvalidGitRepositoryError, git.NoSuchPathError) as e:
                raise RepositoryNotFound(f"{identifier} is not a git repository") from e
        else:
            url = self.resolve_url(identifier)
            if url is None:
                raise RepositoryNotFound(f"{identifier} is neither a local repository nor a remote")
            repo = self._clone_or_fetch(identifier, url)

        if not repo.head.is_valid():
            raise EmptyRepository(f"{identifier} is empty")
        return repo

    def _clone_or_fetch(self, identifier: str, url: str) -> git.Repo:
        repo_dir = self.cache_dir / re.sub(r'[^\w.-]', '_', identifier)
        env = self.git_env(url)
        cached = repo_dir.exists()
        try:
            if cached:
                logger.info(f"Updating cached clone of {identifier}")
                repo = git.Repo(repo_dir)
                origin = repo.remotes.origin
                if origin.url != url:
                    origin.set_url(url)
                repo.git.fetch("--prune", "origin", env=env, kill_after_timeout=CLONE_TIMEOUT_SECONDS)
                return repo

            logger.info(f"Cloning {identifier}")
            git.Git().clone(
                "--mirror", "--", url, str(repo_dir),
                env=env, kill_after_timeout=CLONE_TIMEOUT_SECONDS
            )
            return git.Repo(repo_dir)

        except git.GitCommandError as e:
            if not cached:
                shutil.rmtree(repo_dir, ignore_errors=True)
            stderr = (e.stderr or "").strip()
            if any(marker in stderr.lower() for marker in REMOTE_NOT_FOUND_MARKERS):
                raise RepositoryNotFound(f"{identifier} not found or not accessible") from e
            raise TransportError(f"clone or fetch failed for {identifier}: {stderr[:200]}") from e
        except git.InvalidGitRepositoryError as e:
            raise TransportError(f"cached clone of {identifier} at {repo_dir} is corrupt") from e

    def list_commits(self, repo: git.Repo) -> List[git.Commit]:
        """All commits reachable from HEAD, newest first."""
        try:
            return list(repo.iter_commits("HEAD"))
        except (git.GitCommandError, ValueError) as e:
            raise CommitEnumerationError(str(e)) from e

    def changes_for(self, commit: git.Commit) -> List[FileChange]:
        """Files touched by a commit relative to its first parent."""
        try:
            if not commit.parents:
                return [
                    FileChange(path=item.path, blob=item)
                    for item in commit.tree.traverse()
                    if item.type == "blob"
                ]

            return [
                FileChange(path=diff.b_path or diff.a_path, patch=diff.diff or b"")
                for diff in commit.parents[0].diff(commit, create_patch=True)
            ]
        except (git.GitCommandError, ValueError) as e:
            raise ChangeEnumerationError(f"{commit.hexsha}: {e}") from e

    def diffs_for(self, change: FileChange) -> List[Tuple[str, str]]:
        """Added text of a change as (chunk, path) pairs."""
        try:
            if change.blob is not None:
                data = change.blob.data_stream.read()
                if is_binary_content(data):
                    return []
                content = data.decode("utf-8", errors="replace")
                if content.endswith("\n"):
                    content = content[:-1]
                return [(content, change.path)] if content else []

            patch = change.patch or b""
            if isinstance(patch, bytes):
                patch = patch.decode("utf-8", errors="replace")
            return [(chunk, change.path) for chunk in extract_added_chunks(patch)]
        except (git.GitCommandError, OSError, ValueError) as e:
            raise DiffError(f"{change.path}: {e}") from e


# ===================================================================
# HOSTING API (PyGithub)
# ===================================================================

class GitHubDirectory:
    """Resolves GitHub users and organizations to repository identifiers."""

    def __init__(
        self,
        token: str = "",
        client: Optional[Github] = None,
        rate_limiter: Optional[GitHubRateLimiter] = None
    ):
        if client is None:
            client = Github(auth=Auth.Token(token)) if token else Github()
        self.client = client
        self.rate_limiter = rate_limiter or GitHubRateLimiter()

    async def _call(self, func, *args):
        return await github_api_call_with_backoff(func, *args, rate_limiter=self.rate_limiter)

    async def list_user_repositories(self, username: str) -> List[str]:
        user = await self._call(self.client.get_user, username)
        repos = await self._call(lambda: list(user.get_repos()))
        return [repo.full_name for repo in repos]

    async def list_org_repositories(self, orgname: str) -> List[str]:
        org = await self._call(self.client.get_organization, orgname)
        repos = await self._call(lambda: list(org.get_repos()))
        return [repo.full_name for repo in repos]

    async def list_org_members(self, orgname: str) -> List[str]:
        org = await self._call(self.client.get_organization, orgname)
        members = await self._call(lambda: list(org.get_members()))
        return [member.login for member in members]

    def close(self) -> None:
        self.client.close()


# ===================================================================
# OUTPUT
# ===================================================================

class FindingSink:
    """Collects findings from all workers and logs each one as it arrives."""

    def __init__(self, log_findings: bool = True):
        self.findings: List[Finding] = []
        self.log_findings = log_findings
        self._lock = threading.Lock()

    def emit(self, finding: Finding) -> None:
        with self._lock:
            self.findings.append(finding)
            if self.log_findings:
                logger.warning(
                    f"[{finding.reason}] {finding.repo_name} {finding.commit_hash[:10]} "
                    f"{finding.file_path}: {finding.secret[:80]}\n{finding.context}",
                    extra={"repo": finding.repo_name, "commit": finding.commit_hash}
                )

    def build_report(self, targets: Sequence[str] = ()) -> Dict[str, Any]:
        """JSON-ready report with statistics."""
        with self._lock:
            findings = list(self.findings)

        by_reason = Counter(f.reason for f in findings)
        by_repo = Counter(f.repo_name for f in findings)

        return {
            "scan_metadata": {
                "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
                "targets": list(targets),
                "total_findings": len(findings),
                "scanner_version": __version__,
            },
            "summary": {
                "by_reason": dict(by_reason),
                "top_repos": dict(by_repo.most_common(10)),
            },
            "findings": [f.to_dict() for f in findings],
        }

    async def save_report(self, output_path: Path, targets: Sequence[str] = ()) -> None:
        report = self.build_report(targets)
        async with aiofiles.open(output_path, 'w') as f:
            await f.write(json.dumps(report, indent=2))
        logger.info(f"JSON report written to {output_path} ({report['scan_metadata']['total_findings']} findings)")


# ===================================================================
# SCAN ORCHESTRATION
# ===================================================================

class OutstandingWork:
    """
    Count of registered repositories not yet finished.

    register() must happen before the matching jobs become visible to
    workers. The finish() call that brings the count to zero returns True;
    that happens exactly once, and nothing can be registered afterwards.
    """

    def __init__(self, initial: int = 0):
        self._pending = initial
        self._registered = initial
        self._completed = False
        self._lock = threading.Lock()

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    @property
    def registered(self) -> int:
        with self._lock:
            return self._registered

    @property
    def completed(self) -> bool:
        with self._lock:
            return self._completed

    def register(self, count: int = 1) -> None:
        if count < 0:
            raise ValueError("count must not be negative")
        with self._lock:
            if self._completed:
                raise CompletionError("cannot register work after the scan completed")
            self._pending += count
            self._registered += count

    def finish(self) -> bool:
        with self._lock:
            if self._pending <= 0:
                raise CompletionError("finished more work than was registered")
            self._pending -= 1
            if self._pending == 0:
                self._completed = True
                return True
            return False


@dataclass
class ScanRun:
    """State shared by every worker of one scan."""
    work: OutstandingWork
    ledger: SecretLedger
    completed: asyncio.Event = field(default_factory=asyncio.Event)
    shutdown: asyncio.Event = field(default_factory=asyncio.Event)
    completion_signals: int = 0
    jobs_enqueued: int = 0


@dataclass
class ScanTargets:
    repos: List[str] = field(default_factory=list)
    users: List[str] = field(default_factory=list)
    orgs: List[str] = field(default_factory=list)

    def describe(self) -> List[str]:
        return (
            [f"repo:{r}" for r in self.repos]
            + [f"user:{u}" for u in self.users]
            + [f"org:{o}" for o in self.orgs]
        )

    def __bool__(self) -> bool:
        return bool(self.repos or self.users or self.orgs)


class ScanOrchestrator:
    """
    Fixed pool of workers draining a queue of repository identifiers.

    Each worker waits for either a job or the shutdown event. A job's
    blocking work (open, traverse, analyze) runs in a thread pool so the
    workers scan repositories in parallel. Every consumed job is counted as
    finished, whatever happened to it; the finish that empties the counter
    sets the completion event, after which shutdown is broadcast.
    """

    def __init__(
        self,
        vcs: GitHistory,
        detectors: Sequence[Detector],
        sink: FindingSink,
        threads: int = SCAN_THREADS,
        ledger: Optional[SecretLedger] = None,
        show_progress: bool = False
    ):
        if threads < 1:
            raise ConfigError("threads must be at least 1")
        self.vcs = vcs
        self.detectors = list(detectors)
        self.sink = sink
        self.threads = threads
        self.ledger = ledger
        self.show_progress = show_progress
        self.run_state: Optional[ScanRun] = None
        self.queue: Optional[asyncio.Queue] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pbar = None

    async def enqueue(self, identifiers: Sequence[str]) -> None:
        """Register and queue repositories; callable only while submission is running."""
        identifiers = list(identifiers)
        if not identifiers:
            return
        self.run_state.work.register(len(identifiers))
        self.run_state.jobs_enqueued += len(identifiers)
        self._pbar.total += len(identifiers)
        self._pbar.refresh()
        for identifier in identifiers:
            self.queue.put_nowait(identifier)

    async def run(self, submit: Callable[["ScanOrchestrator"], Awaitable[None]]) -> ScanRun:
        """
        Start the pool, let submit() enqueue work, and return once every job is done.

        The run holds one registration of its own while submit() executes, so
        workers cannot drive the counter to zero while repositories are still
        being discovered. If submit() raises, already queued work is still
        drained before the error propagates.
        """
        # submission guard
        self.run_state = ScanRun(work=OutstandingWork(initial=1), ledger=self.ledger or SecretLedger())
        self.queue = asyncio.Queue()
        self._executor = ThreadPoolExecutor(max_workers=self.threads, thread_name_prefix="scan")
        self._pbar = tqdm(total=0, desc="Scanning repos", unit="repo", disable=not self.show_progress)

        workers = [asyncio.ensure_future(self._worker(worker_id)) for worker_id in range(self.threads)]
        try:
            await submit(self)
        finally:
            self._job_finished(counts_as_repo=False)
            if self.run_state.jobs_enqueued == 0:
                logger.warning("No repositories to scan")
            await self.run_state.completed.wait()
            self.run_state.shutdown.set()
            await asyncio.gather(*workers)
            self._executor.shutdown(wait=True)
            self._pbar.close()

        return self.run_state

    def _job_finished(self, counts_as_repo: bool = True) -> None:
        if counts_as_repo:
            self._pbar.update(1)
        if self.run_state.work.finish():
            self.run_state.completion_signals += 1
            self.run_state.completed.set()

    async def _worker(self, worker_id: int) -> None:
        loop = asyncio.get_running_loop()
        while True:
            job = asyncio.ensure_future(self.queue.get())
            stop = asyncio.ensure_future(self.run_state.shutdown.wait())
            finished, _ = await asyncio.wait({job, stop}, return_when=asyncio.FIRST_COMPLETED)

            if job not in finished:
                job.cancel()
                await asyncio.gather(job, stop, return_exceptions=True)
                logger.debug(f"Worker {worker_id} stopped")
                return

            stop.cancel()
            await asyncio.gather(stop, return_exceptions=True)
            reponame = job.result()
            try:
                await loop.run_in_executor(self._executor, self.scan_repository, reponame)
            except Exception as e:
                logger.error(f"Unexpected failure while scanning {reponame}: {e}", exc_info=True,
                             extra={"repo": reponame})
            finally:
                self.queue.task_done()
                self._job_finished()

    def scan_repository(self, reponame: str) -> int:
        """
        Open one repository and analyze every added chunk of its history.

        Repository-level failures are logged and end the scan of this
        repository; change-level failures skip only that change.

        Returns:
            Number of findings emitted for the repository
        """
        try:
            repo = self.vcs.open_repository(reponame)
        except EmptyRepository:
            logger.warning(f"{reponame} is empty", extra={"repo": reponame})
            return 0
        except RepositoryError as e:
            logger.error(f"Unable to open repo {reponame}: {e}", extra={"repo": reponame})
            return 0

        try:
            commits = self.vcs.list_commits(repo)
        except CommitEnumerationError as e:
            logger.warning(f"Unable to fetch commits for {reponame}: {e}", extra={"repo": reponame})
            return 0

        logger.info(f"Scanning {len(commits)} commits of {reponame}", extra={"repo": reponame})
        emitted = 0

        # oldest first
        for commit in reversed(commits):
            try:
                changes = self.vcs.changes_for(commit)
            except ChangeEnumerationError as e:
                logger.warning(f"Unable to get commit changes for hash {commit.hexsha}: {e}",
                               extra={"repo": reponame, "commit": commit.hexsha})
                continue

            for change in changes:
                try:
                    diffs = self.vcs.diffs_for(change)
                except DiffError as e:
                    logger.warning(f"Unable to get diffs of {change.path} in {reponame}@{commit.hexsha}: {e}",
                                   extra={"repo": reponame, "commit": commit.hexsha})
                    continue

                for diff_text, file_path in diffs:
                    unit = ChangeUnit(
                        diff=diff_text,
                        file_path=file_path,
                        commit_hash=commit.hexsha,
                        repo_name=reponame,
                        author=commit.author.name or "",
                        email=commit.author.email or "",
                        date=commit.committed_datetime.isoformat(),
                        message=commit.message.strip(),
                    )
                    for detector in self.detectors:
                        for finding in detector.detect(unit, self.run_state.ledger):
                            self.sink.emit(finding)
                            emitted += 1

        logger.info(f"✓ Finished {reponame}: {emitted} findings",
                    extra={"repo": reponame, "finding_count": emitted})
        return emitted


# ===================================================================
# SUBMISSION
# ===================================================================

async def submit_user(orchestrator: ScanOrchestrator, directory: GitHubDirectory, username: str) -> None:
    repos = await directory.list_user_repositories(username)
    logger.info(f"✓ Found {len(repos)} repositories for user {username}")
    await orchestrator.enqueue(repos)


async def submit_org(
    orchestrator: ScanOrchestrator,
    directory: GitHubDirectory,
    orgname: str,
    include_members: bool = False
) -> None:
    """Queue an organization's repositories, then each member's when requested."""
    members = await directory.list_org_members(orgname) if include_members else []
    repos = await directory.list_org_repositories(orgname)
    logger.info(f"✓ Found {len(repos)} repositories in organization {orgname}")
    await orchestrator.enqueue(repos)

    for member in members:
        try:
            await submit_user(orchestrator, directory, member)
        except GithubException as e:
            logger.error(f"Failed to list repositories of {orgname} member {member}: {e}")


async def submit_targets(
    orchestrator: ScanOrchestrator,
    targets: ScanTargets,
    directory: Optional[GitHubDirectory] = None,
    include_members: bool = False
) -> None:
    """Queue every target; a user or organization that cannot be resolved is logged and skipped."""
    await orchestrator.enqueue(targets.repos)

    if (targets.users or targets.orgs) and directory is None:
        raise ConfigError("a GitHub directory is required to expand users and organizations")

    for username in targets.users:
        try:
            await submit_user(orchestrator, directory, username)
        except (GithubException, ScannerError) as e:
            logger.error(f"Failed to access user {username}: {e}")

    for orgname in targets.orgs:
        try:
            await submit_org(orchestrator, directory, orgname, include_members)
        except (GithubException, ScannerError) as e:
            logger.error(f"Failed to access organization {orgname}: {e}")


# ===================================================================
# SCAN CONFIGURATION & ENTRY POINTS
# ===================================================================

@dataclass
class ScanConfig:
    mode: str = SCAN_MODE
    context: int = SCAN_CONTEXT
    skip_duplicates: bool = SKIP_DUPLICATES
    noise: str = SCAN_NOISE
    include_members: bool = False
    threads: int = SCAN_THREADS
    entropy: EntropySettings = field(default_factory=EntropySettings)
    rules_file: str = RULES_FILE
    default_rules: bool = True
    cache_dir: str = CACHE_DIR
    save_path: str = OUTPUT_FILE
    github_token: str = GITHUB_TOKEN
    show_progress: bool = True

    def validate(self) -> None:
        if self.mode not in SCAN_MODES:
            raise ConfigError(f"Unknown scan mode: {self.mode!r}")
        if self.context < 0:
            raise ConfigError("context must not be negative")
        if self.threads < 1:
            raise ConfigError("threads must be at least 1")
        if self.entropy.min_length < 1:
            raise ConfigError("minimum entropy string length must be at least 1")
        parse_noise_range(self.noise)

    def active_rules(self) -> List[Rule]:
        """Default and file rules filtered by the configured noise range."""
        rules = list(DEFAULT_RULES) if self.default_rules else []
        if self.rules_file:
            rules.extend(load_rules(self.rules_file))
        return filter_rules(rules, parse_noise_range(self.noise))


async def scan_async(
    config: ScanConfig,
    targets: ScanTargets,
    rules: Optional[Sequence[Rule]] = None,
    vcs: Optional[GitHistory] = None,
    directory: Optional[GitHubDirectory] = None,
    sink: Optional[FindingSink] = None,
    ledger: Optional[SecretLedger] = None
) -> List[Finding]:
    """
    Scan every target's full history and return the findings.

    Args:
        config: Scan configuration
        targets: Repositories, users and organizations to scan
        rules: Active rule set (defaults to config.active_rules())
        vcs: Version-control adapter (defaults to GitHistory on the cache dir)
        directory: GitHub adapter (created when users/orgs are given)
        sink: Finding sink (defaults to a new FindingSink)
        ledger: Dedup ledger shared with an earlier scan, if any

    Returns:
        Findings in emission order
    """
    config.validate()
    rules = list(rules) if rules is not None else config.active_rules()
    sink = sink or FindingSink()
    detectors = build_detectors(config.mode, rules, config.context, config.skip_duplicates, config.entropy)

    if config.mode != "entropy" and not rules:
        logger.warning("No rules are active for the configured noise range")

    owns_cache = vcs is None and not config.cache_dir
    cache_dir = Path(config.cache_dir) if config.cache_dir else None
    if owns_cache:
        cache_dir = Path(tempfile.mkdtemp(prefix="history_scan_"))
    elif cache_dir is not None:
        cache_dir.mkdir(parents=True, exist_ok=True)
    if vcs is None:
        vcs = GitHistory(cache_dir, token=config.github_token)

    owns_directory = directory is None and bool(targets.users or targets.orgs)
    if owns_directory:
        directory = GitHubDirectory(config.github_token)

    orchestrator = ScanOrchestrator(
        vcs, detectors, sink,
        threads=config.threads,
        ledger=ledger,
        show_progress=config.show_progress
    )

    async def submit(orch: ScanOrchestrator) -> None:
        await submit_targets(orch, targets, directory, config.include_members)

    try:
        run = await orchestrator.run(submit)
        logger.info(f"Scan complete. {run.jobs_enqueued} repositories, {len(sink.findings)} findings")
    finally:
        if owns_directory:
            directory.close()
        if owns_cache:
            logger.info(f"Cleaning up clone directory: {cache_dir}")
            shutil.rmtree(cache_dir, ignore_errors=True)

    if config.save_path:
        await sink.save_report(Path(config.save_path), targets.describe())

    return list(sink.findings)


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='Scan the full commit history of Git repositories for committed secrets',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
ENVIRONMENT VARIABLES:
  GITHUB_TOKEN          GitHub personal access token (users/orgs/private repos)
  SCAN_THREADS          Repositories scanned in parallel (default: 5)
  SCAN_CONTEXT          Context lines around a match (default: 2)
  SCAN_MODE             regex|entropy|both (default: regex)
  SCAN_NOISE            Noise range of active rules (default: 1-5)
  SKIP_DUPLICATES       true to report each secret once per repository
  RULES_FILE            JSON rules file loaded on top of the defaults
  CACHE_DIR             Keep clones here between runs
  CLONE_TIMEOUT_SECONDS Kill a clone or fetch after this long (default: 600)
  OUTPUT_FILE           Write a JSON findings report here

USAGE EXAMPLES:
  python history_secret_scanner.py --repo .
  python history_secret_scanner.py --repo octocat/Hello-World --mode both
  python history_secret_scanner.py --org my-org --include-members --skip-duplicates --save findings.json

EXIT CODES:
  0   Success
  1   Error (bad configuration, no targets, fatal failure)
  2   Findings present and --fail-on-findings given
  130 Interrupted by user (Ctrl+C)
        '''
    )

    parser.add_argument('-r', '--repo', action='append', default=[], metavar='REPO',
                        help='Local path, clone URL or owner/name of a repository (repeatable)')
    parser.add_argument('-u', '--user', action='append', default=[], metavar='USER',
                        help='Scan every repository of a GitHub user (repeatable)')
    parser.add_argument('-o', '--org', action='append', default=[], metavar='ORG',
                        help='Scan every repository of a GitHub organization (repeatable)')
    parser.add_argument('--include-members', action='store_true',
                        help="Also scan the repositories of each organization member")

    parser.add_argument('--mode', choices=SCAN_MODES, default=SCAN_MODE,
                        help=f'Detection mode (default: {SCAN_MODE})')
    parser.add_argument('--context', type=int, default=SCAN_CONTEXT,
                        help=f'Lines of context around a match (default: {SCAN_CONTEXT})')
    parser.add_argument('--no-context', action='store_true',
                        help='Only show the matching line')
    parser.add_argument('--skip-duplicates', action='store_true', default=SKIP_DUPLICATES,
                        help='Report each secret once per repository')
    parser.add_argument('--noise', default=SCAN_NOISE,
                        help=f'Noise range of active rules, e.g. 1-3 (default: {SCAN_NOISE})')
    parser.add_argument('--threads', type=int, default=SCAN_THREADS,
                        help=f'Repositories scanned in parallel (default: {SCAN_THREADS})')

    parser.add_argument('--rules', metavar='FILE', default=RULES_FILE,
                        help='JSON rules file loaded on top of the default rules')
    parser.add_argument('--no-default-rules', action='store_true',
                        help='Only use rules from --rules')
    parser.add_argument('--min-entropy-length', type=int, default=MIN_ENTROPY_STRING_LENGTH,
                        help=f'Shortest string checked for entropy (default: {MIN_ENTROPY_STRING_LENGTH})')
    parser.add_argument('--b64-threshold', type=float, default=B64_ENTROPY_THRESHOLD,
                        help=f'Entropy threshold for base64 strings (default: {B64_ENTROPY_THRESHOLD})')
    parser.add_argument('--hex-threshold', type=float, default=HEX_ENTROPY_THRESHOLD,
                        help=f'Entropy threshold for hex strings (default: {HEX_ENTROPY_THRESHOLD})')

    parser.add_argument('--cache', metavar='DIR', default=CACHE_DIR,
                        help='Directory for cloned repositories (default: temporary, removed afterwards)')
    parser.add_argument('--save', metavar='FILE', default=OUTPUT_FILE,
                        help='Write findings to a JSON report')
    parser.add_argument('--token', default=GITHUB_TOKEN,
                        help='GitHub token (default: $GITHUB_TOKEN)')
    parser.add_argument('--fail-on-findings', action='store_true',
                        help='Exit with code 2 if findings exist (CI-friendly)')
    parser.add_argument('--no-progress', action='store_true',
                        help='Disable the progress bar')

    parser.add_argument('--log-format', choices=['text', 'json'], default=LOG_FORMAT,
                        help=f'Logging format (default: {LOG_FORMAT})')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Enable verbose debug logging')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> ScanConfig:
    return ScanConfig(
        mode=args.mode,
        context=0 if args.no_context else args.context,
        skip_duplicates=args.skip_duplicates,
        noise=args.noise,
        include_members=args.include_members,
        threads=args.threads,
        entropy=EntropySettings(
            min_length=args.min_entropy_length,
            base64_threshold=args.b64_threshold,
            hex_threshold=args.hex_threshold,
        ),
        rules_file=args.rules,
        default_rules=not args.no_default_rules,
        cache_dir=args.cache,
        save_path=args.save,
        github_token=args.token,
        show_progress=not args.no_progress,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point with validation and error handling."""
    args = parse_arguments(argv)

    setup_logging(args.log_format)
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    config = config_from_args(args)
    targets = ScanTargets(repos=args.repo, users=args.user, orgs=args.org)

    if not targets:
        logger.error("Nothing to scan: give at least one --repo, --user or --org")
        return 1

    try:
        config.validate()
        rules = config.active_rules()
    except ScannerError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    logger.info("=" * 70)
    logger.info("GIT HISTORY SECRET SCANNER")
    logger.info("=" * 70)
    logger.info(f"Targets: {', '.join(targets.describe())}")
    logger.info(f"Mode: {config.mode}")
    logger.info(f"Active rules: {len(rules)} (noise {config.noise})")
    logger.info(f"Context lines: {config.context}")
    logger.info(f"Skip duplicates: {config.skip_duplicates}")
    logger.info(f"Threads: {config.threads}")
    logger.info("=" * 70)

    try:
        findings = asyncio.run(scan_async(config, targets, rules))
    except KeyboardInterrupt:
        logger.warning("Scan interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1

    logger.info("=" * 70)
    logger.info(f"SCAN COMPLETED: {len(findings)} potential secrets")
    logger.info("=" * 70)

    if args.fail_on_findings and findings:
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
