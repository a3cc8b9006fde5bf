"""Reversible secret redaction.

Secrets are swapped for ``{{TYPE_N}}`` placeholders before any text is shown
to the oracle, and swapped back only when a command is about to run.
"""

import math
import re
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Pattern, Set, Tuple


PLACEHOLDER_RE = re.compile(r"\{\{([A-Z][A-Z0-9]*(?:_[A-Z0-9]+)*?)_(\d+)\}\}")

# Value part of "label: value" detectors. Never starts inside a placeholder.
_VALUE = r"[\"']?((?!\{\{)[^\s\"',;]+)"

# Label boundaries allow "_" so DB_PASSWORD=... is caught.
_LEFT = r"(?<![A-Za-z0-9])"
_RIGHT = r"(?![A-Za-z0-9])"


@dataclass(frozen=True)
class SecretDetector:
    """One entry of the ordered detector table."""
    name: str
    pattern: Pattern
    group: int = 0
    min_entropy: Optional[float] = None

    def accepts(self, value: str) -> bool:
        if self.min_entropy is None:
            return True
        has_digit = any(c.isdigit() for c in value)
        has_alpha = any(c.isalpha() for c in value)
        return has_digit and has_alpha and shannon_entropy(value) >= self.min_entropy


def shannon_entropy(value: str) -> float:
    """Bits of entropy per character."""
    if not value:
        return 0.0
    counts = Counter(value)
    total = len(value)
    return -sum((n / total) * math.log2(n / total) for n in counts.values())


# Order matters: credential-context detectors run before the generic
# high-entropy / long-hex detectors so a value is only ever matched once.
DEFAULT_DETECTORS: Tuple[SecretDetector, ...] = (
    SecretDetector(
        "PRIVATE_KEY",
        re.compile(
            r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]*?-----END [A-Z ]*PRIVATE KEY-----"
        ),
    ),
    SecretDetector(
        "URL_PASSWORD",
        re.compile(r"\b[a-zA-Z][a-zA-Z0-9+.\-]*://[^\s:/@]+:((?!\{\{)[^\s@/]+)@"),
        group=1,
    ),
    SecretDetector(
        "BEARER_TOKEN",
        re.compile(r"\bBearer\s+((?!\{\{)[A-Za-z0-9\-._~+/]+=*)"),
        group=1,
    ),
    SecretDetector(
        "PASSWORD",
        re.compile(_LEFT + r"(?:password|passwd|passphrase|pwd)" + _RIGHT + r"\s*[:=]\s*" + _VALUE, re.IGNORECASE),
        group=1,
    ),
    SecretDetector(
        "TOKEN",
        re.compile(_LEFT + r"(?:access[_-]?token|auth[_-]?token|refresh[_-]?token|token)" + _RIGHT + r"\s*[:=]\s*" + _VALUE, re.IGNORECASE),
        group=1,
    ),
    SecretDetector(
        "SECRET",
        re.compile(_LEFT + r"(?:client[_-]?secret|secret)" + _RIGHT + r"\s*[:=]\s*" + _VALUE, re.IGNORECASE),
        group=1,
    ),
    SecretDetector(
        "API_KEY",
        re.compile(_LEFT + r"(?:api[_-]?key|apikey|access[_-]?key|secret[_-]?key|private[_-]?key|key)" + _RIGHT + r"\s*[:=]\s*" + _VALUE, re.IGNORECASE),
        group=1,
    ),
    SecretDetector("AWS_ACCESS_KEY", re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")),
    SecretDetector("GITHUB_TOKEN", re.compile(r"\bgh[pousr]_[A-Za-z0-9]{36,}\b")),
    SecretDetector("SLACK_TOKEN", re.compile(r"\bxox[abprs]-[A-Za-z0-9\-]{10,}")),
    SecretDetector("API_KEY", re.compile(r"\bsk-[A-Za-z0-9_\-]{20,}")),
    SecretDetector(
        "JWT",
        re.compile(r"\beyJ[A-Za-z0-9_\-]{10,}\.[A-Za-z0-9_\-]{10,}\.[A-Za-z0-9_\-]{10,}"),
    ),
    SecretDetector("HEX_SECRET", re.compile(r"\b[0-9a-fA-F]{32,}\b")),
    SecretDetector(
        "HIGH_ENTROPY",
        re.compile(r"(?<![A-Za-z0-9+/_\-])[A-Za-z0-9+/_\-]{32,}={0,2}"),
        min_entropy=4.0,
    ),
)


class SecretMapping:
    """Placeholder token -> secret value pairs produced by one redact call."""

    def __init__(self):
        self._by_token: Dict[str, str] = {}
        self._by_value: Dict[str, str] = {}

    def add(self, token: str, value: str) -> None:
        self._by_token[token] = value
        self._by_value[value] = token

    def token_for(self, value: str) -> Optional[str]:
        return self._by_value.get(value)

    def get(self, token: str) -> Optional[str]:
        return self._by_token.get(token)

    def tokens(self) -> List[str]:
        return list(self._by_token)

    def __contains__(self, token: str) -> bool:
        return token in self._by_token

    def __len__(self) -> int:
        return len(self._by_token)

    def __iter__(self) -> Iterator[str]:
        return iter(self._by_token)

    def __repr__(self) -> str:
        # Never show values
        return f"SecretMapping(tokens={self.tokens()!r})"

    def mask(self, text: Optional[str]) -> Optional[str]:
        """Replace every known secret value in text with its placeholder."""
        if not text or not self._by_value:
            return text
        for value in sorted(self._by_value, key=len, reverse=True):
            text = text.replace(value, self._by_value[value])
        return text


@dataclass(frozen=True)
class Substitution:
    """Result of restoring placeholders in a text."""
    text: str
    unresolved: Tuple[str, ...] = ()

    @property
    def unresolved_count(self) -> int:
        return len(self.unresolved)


class SecretVault:
    """Redacts secrets out of text and restores them at execution time."""

    def __init__(self, detectors: Tuple[SecretDetector, ...] = DEFAULT_DETECTORS):
        self.detectors = detectors

    def redact(self, text: str) -> Tuple[str, SecretMapping]:
        """
        Replace every detected secret with a placeholder token.

        Identical values share one token. Token names already present
        literally in the input are skipped so they can never be confused
        with the tokens minted here.

        Returns:
            (safe_text, mapping)
        """
        mapping = SecretMapping()
        if not text:
            return text, mapping

        reserved: Set[str] = {m.group(0) for m in PLACEHOLDER_RE.finditer(text)}
        counters: Dict[str, int] = {}

        def mint(kind: str) -> str:
            while True:
                counters[kind] = counters.get(kind, 0) + 1
                token = f"{{{{{kind}_{counters[kind]}}}}}"
                if token not in reserved:
                    return token

        safe = text
        for detector in self.detectors:

            def _repl(m, detector=detector):
                value = m.group(detector.group)
                if not value or not detector.accepts(value):
                    return m.group(0)
                token = mapping.token_for(value)
                if token is None:
                    token = mint(detector.name)
                    mapping.add(token, value)
                start = m.start(detector.group) - m.start()
                end = m.end(detector.group) - m.start()
                whole = m.group(0)
                return whole[:start] + token + whole[end:]

            safe = detector.pattern.sub(_repl, safe)

        return safe, mapping

    def substitute(self, text: str, mapping: SecretMapping) -> Substitution:
        """
        Restore placeholders produced by ``redact``.

        Unknown placeholders are left intact and reported in
        ``Substitution.unresolved``.
        """
        if not text:
            return Substitution(text=text)

        unresolved: List[str] = []

        def _repl(m):
            token = m.group(0)
            value = mapping.get(token)
            if value is None:
                unresolved.append(token)
                return token
            return value

        restored = PLACEHOLDER_RE.sub(_repl, text)
        return Substitution(text=restored, unresolved=tuple(unresolved))


_default_vault = SecretVault()


def redact(text: str) -> Tuple[str, SecretMapping]:
    """Redact with the default detector table."""
    return _default_vault.redact(text)


def substitute(text: str, mapping: SecretMapping) -> Substitution:
    """Restore placeholders with the default vault."""
    return _default_vault.substitute(text, mapping)
