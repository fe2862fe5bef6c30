"""Substance catalogue and panel definitions.

Every substance code used by the classifier, the confirmation resolver and
the notification layer flows through :func:`normalize_substance` so that a
code entered as ``" THC"`` on an instant cup and ``"thc"`` on a medication
record compare equal.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

# Sentinel stored on medications that do not show on any panel.
NO_DETECTION = "none"

SUBSTANCE_LABELS: Dict[str, str] = {
    "6-mam": "6-MAM (Heroin)",
    "alcohol": "Alcohol (Ethanol)",
    "amphetamines": "Amphetamines",
    "barbiturates": "Barbiturates",
    "benzodiazepines": "Benzodiazepines",
    "buprenorphine": "Buprenorphine",
    "cocaine": "Cocaine",
    "etg": "EtG (Alcohol)",
    "fentanyl": "Fentanyl",
    "kratom": "Kratom",
    "mdma": "MDMA (Ecstasy)",
    "methadone": "Methadone",
    "methamphetamines": "Methamphetamines",
    "opiates": "Opiates",
    "oxycodone": "Oxycodone",
    "pcp": "PCP",
    "propoxyphene": "Propoxyphene",
    "synthetic_cannabinoids": "Synthetic Cannabinoids",
    "thc": "THC",
    "tramadol": "Tramadol",
    "tricyclic_antidepressants": "Tricyclic Antidepressants",
    "other": "Other",
}

# Shorter names used in client-facing summaries.
SIMPLE_LABEL_OVERRIDES: Dict[str, str] = {
    "6-mam": "Heroin",
}

INSTANT_15_PANEL = "15-panel-instant"
LAB_11_PANEL = "11-panel-lab"
LAB_17_PANEL_SOS = "17-panel-sos-lab"
LAB_ETG = "etg-lab"

# Panel -> ordered (code, label) pairs as printed on the panel report.
PANELS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    INSTANT_15_PANEL: (
        ("6-mam", "6-MAM (Heroin)"),
        ("amphetamines", "Amphetamines"),
        ("benzodiazepines", "Benzodiazepines"),
        ("buprenorphine", "Buprenorphine"),
        ("cocaine", "Cocaine"),
        ("etg", "EtG (Alcohol)"),
        ("fentanyl", "Fentanyl"),
        ("mdma", "MDMA (Ecstasy)"),
        ("methadone", "Methadone"),
        ("methamphetamines", "Methamphetamine"),
        ("opiates", "Opiates"),
        ("oxycodone", "Oxycodone"),
        ("synthetic_cannabinoids", "Synthetic Cannabinoids"),
        ("thc", "THC (Marijuana)"),
        ("tramadol", "Tramadol"),
    ),
    LAB_11_PANEL: (
        ("amphetamines", "Amphetamines (AMP)"),
        ("benzodiazepines", "Benzodiazepines (BZO)"),
        ("buprenorphine", "Buprenorphine (BUP)"),
        ("cocaine", "Cocaine (COC)"),
        ("etg", "EtG (ETG)"),
        ("fentanyl", "Fentanyl (FEN)"),
        ("kratom", "Kratom (MIT)"),
        ("methadone", "Methadone (MTD)"),
        ("opiates", "Opiates (OPI)"),
        ("thc", "THC (THC)"),
    ),
    LAB_17_PANEL_SOS: (
        ("alcohol", "Alcohol (Ethanol)"),
        ("amphetamines", "Amphetamines"),
        ("barbiturates", "Barbiturates"),
        ("benzodiazepines", "Benzodiazepines"),
        ("buprenorphine", "Buprenorphine"),
        ("cocaine", "Cocaine"),
        ("mdma", "MDMA (Ecstasy)"),
        ("methadone", "Methadone"),
        ("opiates", "Opiates"),
        ("oxycodone", "Oxycodone"),
        ("pcp", "PCP"),
        ("propoxyphene", "Propoxyphene"),
        ("thc", "THC (Marijuana)"),
        ("tricyclic_antidepressants", "Tricyclic Antidepressants"),
    ),
    LAB_ETG: (("etg", "EtG (Alcohol)"),),
}

INSTANT_TEST_TYPES: FrozenSet[str] = frozenset({INSTANT_15_PANEL})
LAB_TEST_TYPES: FrozenSet[str] = frozenset({LAB_11_PANEL, LAB_17_PANEL_SOS, LAB_ETG})
TEST_TYPES: FrozenSet[str] = INSTANT_TEST_TYPES | LAB_TEST_TYPES


def normalize_substance(code: object) -> str:
    """Return the canonical (trimmed, lower-case) form of a substance code."""

    if code is None:
        return ""
    return str(code).strip().lower()


def normalize_substances(codes: Optional[Iterable[object]]) -> List[str]:
    """Normalise ``codes`` preserving first-seen order.

    Blank entries and the ``none`` sentinel are dropped, duplicates collapse
    onto their first occurrence.  A non-iterable or string value is treated
    as malformed and yields an empty list.
    """

    if codes is None or isinstance(codes, (str, bytes)):
        return []
    try:
        iterator = iter(codes)
    except TypeError:
        return []
    seen: Dict[str, None] = {}
    for raw in iterator:
        code = normalize_substance(raw)
        if not code or code == NO_DETECTION:
            continue
        seen.setdefault(code, None)
    return list(seen)


def panel_substances(test_type: Optional[str]) -> Optional[FrozenSet[str]]:
    """Return the substance codes screened by ``test_type`` or ``None``."""

    panel = PANELS.get((test_type or "").strip().lower())
    if panel is None:
        return None
    return frozenset(code for code, _ in panel)


def get_substance_options(test_type: Optional[str] = None) -> List[Dict[str, str]]:
    """Return ``{"label", "value"}`` options for ``test_type``.

    Unknown or missing test types fall back to the full catalogue.
    """

    panel = PANELS.get((test_type or "").strip().lower())
    if panel is not None:
        return [{"label": label, "value": code} for code, label in panel]
    return [
        {"label": label, "value": code}
        for code, label in sorted(SUBSTANCE_LABELS.items(), key=lambda item: item[1])
        if code != "other"
    ]


def is_known_substance(code: object) -> bool:
    return normalize_substance(code) in SUBSTANCE_LABELS


def is_lab_test(test_type: Optional[str]) -> bool:
    return (test_type or "").strip().lower() in LAB_TEST_TYPES


def format_substance(code: object, simple: bool = False) -> str:
    """Return the display label for ``code``; unknown codes pass through."""

    key = normalize_substance(code)
    if simple and key in SIMPLE_LABEL_OVERRIDES:
        return SIMPLE_LABEL_OVERRIDES[key]
    label = SUBSTANCE_LABELS.get(key)
    if label is None:
        return str(code) if code is not None else ""
    return label


def format_substances(codes: Iterable[object], simple: bool = False) -> List[str]:
    return [format_substance(code, simple=simple) for code in codes]


__all__ = [
    "INSTANT_15_PANEL",
    "INSTANT_TEST_TYPES",
    "LAB_11_PANEL",
    "LAB_17_PANEL_SOS",
    "LAB_ETG",
    "LAB_TEST_TYPES",
    "NO_DETECTION",
    "PANELS",
    "SUBSTANCE_LABELS",
    "TEST_TYPES",
    "format_substance",
    "format_substances",
    "get_substance_options",
    "is_known_substance",
    "is_lab_test",
    "normalize_substance",
    "normalize_substances",
    "panel_substances",
]
