"""
Normalization helpers for tax ids, material codes, names and phone numbers.

These functions define the canonical forms used for equality comparisons
across formatting variants. They are pure and never touch the ledger.
"""

import re
import unicodedata
from typing import Optional

_COUNTRY_PREFIX = re.compile(r"^ES[\s\-_.:]?", re.IGNORECASE)
_CIF_PATTERN = re.compile(r"^[A-Z][0-9]{8}$")
_NIF_PATTERN = re.compile(r"^[0-9]{8}[A-Z]$")
_NIE_PATTERN = re.compile(r"^[XYZ][0-9]{7}[A-Z]$")

_MATERIAL_CODE_SEPARATORS = re.compile(r"[-_.:\s]")
_DATE_LIKE_CODE = re.compile(r"^20\d{6}$")
_MATERIAL_CODE_PATTERNS = [
    re.compile(rf"\b({prefix}[-_.:\s]*[A-Z0-9]+)\b", re.IGNORECASE)
    for prefix in ("REF", "COD", "ART", "MAT", "SKU")
]

# Legal-form suffixes ignored when comparing provider names
_LEGAL_FORMS = {"sl", "sa", "slu", "sau", "slne", "scoop", "sc", "cb", "sll", "srl"}

MATERIAL_SLUG_MAX_LENGTH = 45
MIN_SIMILAR_CODE_LENGTH = 6
MIN_CONTAINMENT_NAME_LENGTH = 5
MIN_PHONE_DIGITS = 9


def strip_accents(text: str) -> str:
    """Decompose and drop combining marks."""
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def normalize_cif(raw: Optional[str]) -> Optional[str]:
    """Canonical CIF/NIF/NIE: uppercase, no country prefix, alphanumerics only."""
    if not raw:
        return None
    upper = str(raw).upper().strip()
    without_country = _COUNTRY_PREFIX.sub("", upper)
    normalized = re.sub(r"[^A-Z0-9]", "", without_country)
    return normalized or None


def build_cif_variants(raw: Optional[str]) -> list[str]:
    """Likely stored spellings of a tax id (hyphenated, ES-prefixed)."""
    if not raw:
        return []
    raw_upper = str(raw).upper().strip()
    core = normalize_cif(raw_upper)
    if not core:
        return [raw_upper]

    variants = [raw_upper, core]
    if _CIF_PATTERN.match(core):
        hyphenated = f"{core[0]}-{core[1:]}"
    elif _NIF_PATTERN.match(core):
        hyphenated = f"{core[:8]}-{core[8]}"
    elif _NIE_PATTERN.match(core):
        hyphenated = f"{core[0]}-{core[1:8]}-{core[8]}"
    else:
        hyphenated = core

    if hyphenated != core:
        variants.append(hyphenated)
    variants.extend([f"ES{core}", f"ES-{hyphenated}", f"ES {core}"])

    # Preserve order, drop repeats
    return list(dict.fromkeys(variants))


def normalize_material_code(code: str) -> str:
    """Uppercase, separators removed."""
    return _MATERIAL_CODE_SEPARATORS.sub("", code.upper()).strip()


def is_valid_material_code(code: Optional[str]) -> bool:
    """At least 3 characters and not a bare yyyymmdd date."""
    if not code or len(code) < 3:
        return False
    return not _DATE_LIKE_CODE.match(code)


def are_material_codes_similar(code1: Optional[str], code2: Optional[str]) -> bool:
    """Equal after normalization, or containment when both are long enough."""
    if not code1 or not code2:
        return False
    normalized1 = normalize_material_code(code1)
    normalized2 = normalize_material_code(code2)
    if normalized1 == normalized2:
        return True
    if len(normalized1) >= MIN_SIMILAR_CODE_LENGTH and len(normalized2) >= MIN_SIMILAR_CODE_LENGTH:
        return normalized1 in normalized2 or normalized2 in normalized1
    return False


def slugify_material_name(name: str) -> str:
    """Lowercase accent-free slug, at most 45 characters."""
    base = strip_accents(name.lower())
    base = re.sub(r"[^a-z0-9\s]", "", base)
    base = re.sub(r"\s+", "-", base.strip())
    return base[:MATERIAL_SLUG_MAX_LENGTH]


def generate_standard_material_code(material_name: str, extracted_code: Optional[str] = None) -> str:
    """
    Build the ledger code for a material.

    A valid extracted code wins (normalized); otherwise the code is a slug of
    the material name.
    """
    if extracted_code and is_valid_material_code(extracted_code):
        return normalize_material_code(extracted_code)
    return slugify_material_name(material_name)


def is_generated_code(code: str, material_name: str) -> bool:
    """True when the code is the name slug rather than an extracted reference."""
    return code == slugify_material_name(material_name)


def normalize_material_name(name: str) -> str:
    """Lowercase, accent-free, alphanumerics and single spaces."""
    text = strip_accents(name.lower())
    text = re.sub(r"[^a-z0-9\s]", "", text)
    return re.sub(r"\s+", " ", text).strip()


def are_material_names_similar(name1: Optional[str], name2: Optional[str]) -> bool:
    """Exact, containment for long names, or two shared significant words."""
    if not name1 or not name2:
        return False
    normalized1 = normalize_material_name(name1)
    normalized2 = normalize_material_name(name2)
    if normalized1 == normalized2:
        return True
    if len(normalized1) >= 6 and len(normalized2) >= 6:
        if normalized1 in normalized2 or normalized2 in normalized1:
            return True

    words1 = [w for w in normalized1.split(" ") if len(w) > 2]
    words2 = [w for w in normalized2.split(" ") if len(w) > 2]
    if len(words1) >= 2 and len(words2) >= 2:
        common = [w for w in words1 if w in words2]
        return len(common) >= 2
    return False


def extract_material_code(material_name: str, description: Optional[str] = None) -> Optional[str]:
    """Pull an obvious REF/COD/ART/MAT/SKU reference out of free text."""
    text = f"{material_name} {description or ''}".strip()
    for pattern in _MATERIAL_CODE_PATTERNS:
        match = pattern.search(text)
        if match:
            clean = re.sub(r"[-_.:\s]+", "", match.group(1).strip().upper())
            if len(clean) >= 4:
                return clean
    return None


def normalize_provider_name(name: Optional[str]) -> str:
    """Accent and punctuation stripped, lowercase, legal-form suffixes removed."""
    if not name:
        return ""
    text = strip_accents(name.lower()).replace(".", "")
    text = re.sub(r"[^a-z0-9\s]", " ", text)
    words = [w for w in text.split() if w not in _LEGAL_FORMS]
    return " ".join(words)


def are_provider_names_similar(name1: Optional[str], name2: Optional[str]) -> bool:
    """Substring containment of normalized names, both long enough."""
    normalized1 = normalize_provider_name(name1)
    normalized2 = normalize_provider_name(name2)
    if not normalized1 or not normalized2:
        return False
    if normalized1 == normalized2:
        return True
    if min(len(normalized1), len(normalized2)) < MIN_CONTAINMENT_NAME_LENGTH:
        return False
    return normalized1 in normalized2 or normalized2 in normalized1


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Digits only, Spanish country prefix removed; None when too short."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("0034"):
        digits = digits[4:]
    elif digits.startswith("34") and len(digits) > 9:
        digits = digits[2:]
    return digits if len(digits) >= MIN_PHONE_DIGITS else None


def placeholder_cif(provider_name: str) -> str:
    """Identity key for providers extracted without a tax id."""
    slug = slugify_material_name(provider_name).upper().replace("-", "")
    return f"SINCIF-{slug or 'DESCONOCIDO'}"
