#!/usr/bin/env python3
from __future__ import annotations

import contextlib
import ipaddress
import re
from typing import Iterable, List, Set


def normalize_domain(domain: str) -> str:
    """Normalize a domain string to a bare hostname.
    - strips scheme (http/https), path/query/fragment/port
    - lowercases
    - removes a trailing dot
    - preserves IP literals as-is
    """
    d = domain.strip().lower()
    d = re.sub(r"^([a-z][a-z0-9+.-]*://)", "", d)
    d = d.split('/')[0]
    d = d.split('#')[0]
    d = d.split('?', 1)[0]

    with contextlib.suppress(ValueError):
        ipaddress.ip_address(d)
        return d

    if ':' in d:
        d = d.split(':', 1)[0]

    if d.endswith('.'):
        d = d[:-1]
    return d


def is_ip_literal(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def normalize_domains(domains: Iterable[str]) -> Set[str]:
    """Normalize a configured block list, dropping blanks, comments and IP literals"""
    result: Set[str] = set()
    for d in domains:
        if not isinstance(d, str) or d.strip().startswith('#'):
            continue
        nd = normalize_domain(d)
        # hosts entries map names, an address cannot be redirected there
        if nd and not is_ip_literal(nd):
            result.add(nd)
    return result


def expand_www_variants(domains: Iterable[str]) -> List[str]:
    """Return the sorted host names for a block: each domain plus its www. variant"""
    expanded: Set[str] = set()
    for d in domains:
        if not d:
            continue
        expanded.add(d)
        if not d.startswith("www."):
            expanded.add(f"www.{d}")
    return sorted(expanded)
