#!/usr/bin/env python3
# filename: domain_matcher.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 1.1.0
# -----------------------------------------------------------------------------
"""
Ordered domain rules.

Rule syntax:
  example.com      exact name
  *.example.com    example.com itself or one label below it
  +.example.com    example.com itself or anything below it

Rules are compiled once and evaluated in configured order, first match wins.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional

from domain_utils import normalize_domain, strip_first_label
from utils import get_logger
from validation import is_valid_domain

logger = get_logger("Fallback.Domains")


class RuleKind(Enum):
    EXACT = "exact"
    SUFFIX_WILDCARD = "wildcard"
    SUBTREE = "subtree"


class MatchResult(Enum):
    BYPASS = "bypass"
    NORMAL = "normal"


@dataclass(frozen=True)
class DomainRule:
    kind: RuleKind
    name: str
    text: str

    @classmethod
    def parse(cls, text: str) -> Optional['DomainRule']:
        if not isinstance(text, str):
            return None
        raw = text.strip()
        if raw.startswith('+.'):
            kind = RuleKind.SUBTREE
            name = raw[2:]
        elif raw.startswith('*.'):
            kind = RuleKind.SUFFIX_WILDCARD
            name = raw[2:]
        else:
            kind = RuleKind.EXACT
            name = raw

        name = normalize_domain(name)
        if not is_valid_domain(name):
            return None
        return cls(kind, name, raw)

    def matches(self, qname_norm: str) -> bool:
        if qname_norm == self.name:
            return True
        if self.kind is RuleKind.SUBTREE:
            return qname_norm.endswith('.' + self.name)
        if self.kind is RuleKind.SUFFIX_WILDCARD:
            return strip_first_label(qname_norm) == self.name
        return False


class DomainMatcher:
    def __init__(self, entries: Optional[Iterable[str]] = None, label: str = "domains"):
        self.label = label
        self.rules: List[DomainRule] = []
        for entry in entries or []:
            rule = DomainRule.parse(entry)
            if rule is None:
                logger.warning(f"Invalid {label} rule '{entry}', skipping")
                continue
            self.rules.append(rule)

        if self.rules:
            logger.info(f"Compiled {len(self.rules)} {label} rules")

    def match(self, qname) -> Optional[DomainRule]:
        if not self.rules:
            return None
        qname_norm = normalize_domain(qname)
        for rule in self.rules:
            if rule.matches(qname_norm):
                if logger.isEnabledFor(logging.DEBUG):
                    logger.debug(f"{qname_norm} matched {self.label} rule '{rule.text}'")
                return rule
        return None

    def classify(self, qname) -> MatchResult:
        return MatchResult.BYPASS if self.match(qname) else MatchResult.NORMAL

    def __len__(self):
        return len(self.rules)

    def __bool__(self):
        return bool(self.rules)
