"""
Compliance mapping: finding category -> named framework controls.

The table is static configuration. The gate only looks categories up; it
does not compute or validate the mapping.
"""
import json
import logging
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

# --- Static Mapper ---

DEFAULT_COMPLIANCE_TABLE: Dict[str, Tuple[str, ...]] = {
    "SQL Injection": ("OWASP A03:2021 Injection", "PCI DSS 6.2.4", "CWE-89"),
    "Command Injection": ("OWASP A03:2021 Injection", "PCI DSS 6.2.4", "CWE-78"),
    "Cross-Site Scripting": ("OWASP A03:2021 Injection", "PCI DSS 6.2.4", "CWE-79"),
    "XSS": ("OWASP A03:2021 Injection", "PCI DSS 6.2.4", "CWE-79"),
    "Path Traversal": ("OWASP A01:2021 Broken Access Control", "PCI DSS 6.2.4", "CWE-22"),
    "Open Redirect": ("OWASP A01:2021 Broken Access Control", "CWE-601"),
    "Cross-Site Request Forgery": ("OWASP A01:2021 Broken Access Control", "PCI DSS 6.2.4", "CWE-352"),
    "Weak Cryptography": ("OWASP A02:2021 Cryptographic Failures", "PCI DSS 4.2.1", "CWE-327"),
    "Hardcoded Secret": ("OWASP A07:2021 Identification and Authentication Failures", "PCI DSS 8.3.1", "CWE-798"),
    "Broken Authentication": ("OWASP A07:2021 Identification and Authentication Failures", "PCI DSS 8.3.1"),
    "Sensitive Data Exposure": ("OWASP A02:2021 Cryptographic Failures", "PCI DSS 3.5.1", "CWE-200"),
    "Information Disclosure": ("OWASP A05:2021 Security Misconfiguration", "CWE-200"),
    "Insecure Deserialization": ("OWASP A08:2021 Software and Data Integrity Failures", "CWE-502"),
    "Server-Side Request Forgery": ("OWASP A10:2021 Server-Side Request Forgery", "CWE-918"),
    "Prototype Pollution": ("OWASP A06:2021 Vulnerable and Outdated Components", "PCI DSS 6.3.3", "CWE-1321"),
    "Regular Expression Denial of Service": ("OWASP A06:2021 Vulnerable and Outdated Components", "PCI DSS 6.3.3", "CWE-1333"),
    "Vulnerable Dependency": ("OWASP A06:2021 Vulnerable and Outdated Components", "PCI DSS 6.3.3"),
    "Content Security Policy": ("OWASP A05:2021 Security Misconfiguration", "PCI DSS 6.4.3", "CWE-693"),
    "Missing Security Headers": ("OWASP A05:2021 Security Misconfiguration", "CWE-693"),
    "Anti-clickjacking Header": ("OWASP A05:2021 Security Misconfiguration", "CWE-1021"),
    "Cookie": ("OWASP A05:2021 Security Misconfiguration", "PCI DSS 6.2.4", "CWE-614"),
    "Rate Limiting": ("OWASP A04:2021 Insecure Design", "PCI DSS 8.3.4", "CWE-770"),
}


class ComplianceMapping:
    """
    Lookup table from finding category to compliance controls.

    An exact (case-insensitive) category match wins; otherwise the longest
    table key contained in the category is used, so "Reflected XSS in
    search" still resolves through "XSS".
    """

    def __init__(self, table: Optional[Mapping[str, Iterable[str]]] = None):
        source = DEFAULT_COMPLIANCE_TABLE if table is None else table
        self._table: Dict[str, Tuple[str, ...]] = {
            key.strip().casefold(): tuple(controls) for key, controls in source.items()
        }
        # Longest keys first so the most specific match wins
        self._keys = sorted(self._table, key=lambda k: (-len(k), k))

    def __len__(self) -> int:
        return len(self._table)

    def controls_for(self, category: str) -> Tuple[str, ...]:
        key = category.strip().casefold()
        if key in self._table:
            return self._table[key]
        for candidate in self._keys:
            if candidate and candidate in key:
                return self._table[candidate]
        return ()

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ComplianceMapping":
        """Load a JSON object of {category: [control, ...]}."""
        with open(path, "r", encoding="utf-8") as handle:
            table = json.load(handle)
        logger.info("Loaded %d compliance mappings from %s", len(table), path)
        return cls({str(k): [str(c) for c in v] for k, v in table.items()})
