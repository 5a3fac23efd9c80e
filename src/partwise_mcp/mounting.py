"""Mounting type detection for electronic component packages."""

THROUGH_HOLE = "through-hole"
SURFACE_MOUNT = "surface-mount"
BOTH = "both"

MOUNTING_TYPES = frozenset({THROUGH_HOLE, SURFACE_MOUNT, BOTH})

# Spellings seen in hand-entered inventory records
_MOUNTING_ALIASES = {
    "through-hole": THROUGH_HOLE,
    "through hole": THROUGH_HOLE,
    "throughhole": THROUGH_HOLE,
    "tht": THROUGH_HOLE,
    "th": THROUGH_HOLE,
    "pth": THROUGH_HOLE,
    "surface-mount": SURFACE_MOUNT,
    "surface mount": SURFACE_MOUNT,
    "smd": SURFACE_MOUNT,
    "smt": SURFACE_MOUNT,
    "both": BOTH,
    "either": BOTH,
}

# Category name patterns (highest priority - these are authoritative)
CATEGORY_SMD_PATTERNS = frozenset({
    "SMD", "SMT", "SURFACE MOUNT",
})

CATEGORY_THROUGH_HOLE_PATTERNS = frozenset({
    "THROUGH HOLE", "THROUGH-HOLE",
})

# SMD package patterns
SMD_PATTERNS = frozenset({
    "0201", "0402", "0603", "0805", "1206", "1210", "1812", "2010", "2512",  # Imperial sizes
    "SOT", "SOD", "SOP", "SOIC", "SSOP", "TSSOP", "TSOP", "MSOP",  # Small outline
    "SO-",  # Small outline (SO-8, SO-14, etc.)
    "QFP", "TQFP", "LQFP",  # Quad flat
    "QFN", "DFN", "MLF", "SON", "WSON",  # No-lead
    "BGA", "CSP", "WLCSP", "LGA", "PLCC",
    "TO-252", "TO-263", "DPAK", "D2PAK",  # Power SMD
    "DO-214", "SMA", "SMB", "SMC",  # Diode SMD
    "SC-70", "SC-88",
    "MELF",
})

# Through-hole package patterns
THROUGH_HOLE_PATTERNS = frozenset({
    "DIP", "PDIP", "SIP",  # In-line
    "TO-92", "TO-126", "TO-220", "TO-247", "TO-3",  # Power through-hole
    "DO-41", "DO-35", "DO-201", "DO-15",  # Axial diodes
    "AXIAL", "RADIAL", "THT", "PIN HEADER",
    "HC-49",  # Crystals
    "THROUGH HOLE", "THROUGH-HOLE",
})


def normalize_mounting(value: str | None) -> str | None:
    """Normalize a declared mounting type, or None if unrecognized."""
    if not value:
        return None
    return _MOUNTING_ALIASES.get(value.strip().lower())


def detect_mounting_type(package: str | None, category: str | None = None) -> str | None:
    """Determine mounting type from category and package name patterns.

    Priority order:
    1. Category name (e.g., "Through Hole Resistors", "SMD Capacitors")
    2. Explicit "SMD"/"SMT" markers in the package
    3. Package name patterns (e.g., "DIP-8", "0402")
    4. Package names starting with a digit (metric/imperial chip sizes)

    Returns:
        "surface-mount", "through-hole", or None when no pattern matches.
        Unknown stays unknown so the physical check is skipped, not guessed.
    """
    if category:
        cat_upper = category.upper()
        for pattern in CATEGORY_THROUGH_HOLE_PATTERNS:
            if pattern in cat_upper:
                return THROUGH_HOLE
        for pattern in CATEGORY_SMD_PATTERNS:
            if pattern in cat_upper:
                return SURFACE_MOUNT

    if not package:
        return None

    pkg_upper = package.upper()

    # "SMD,P=1.27mm" is SMD even though it carries a pitch
    if "SMD" in pkg_upper or "SMT" in pkg_upper:
        return SURFACE_MOUNT

    for pattern in THROUGH_HOLE_PATTERNS:
        if pattern in pkg_upper:
            return THROUGH_HOLE

    for pattern in SMD_PATTERNS:
        if pattern in pkg_upper:
            return SURFACE_MOUNT

    if pkg_upper[0].isdigit():
        return SURFACE_MOUNT

    return None


def mountings_conflict(a: str | None, b: str | None) -> bool:
    """True when one side is through-hole and the other surface-mount."""
    if not a or not b or a == b:
        return False
    return BOTH not in (a, b)
