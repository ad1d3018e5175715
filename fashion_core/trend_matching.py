"""
Deterministic alignment of detected product attributes with trend references.

Each aspect (color, fabric, style) is classified against every reference of
its kind into one of five tiers, and the value is placed inside the tier's
band by the reference's confidence or by how close the match is:

    exact match to the top reference   100
    same family / category             80-90
    neutral, versatile or classic      50-70 (fabric 50-65, style 60-70)
    off-trend                          20-50
    opposed to the trend               0-20

The best-aligned reference wins.
"""

import colorsys
import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional, Sequence, Set, Tuple

from fashion_core.models import SubScore, TrendKind, TrendReference


class Tier(str, Enum):
    EXACT = "exact"
    FAMILY = "family"
    NEUTRAL = "neutral"
    OFF_TREND = "off_trend"
    OPPOSED = "opposed"


BANDS: Dict[TrendKind, Dict[Tier, Tuple[float, float]]] = {
    "color": {
        Tier.EXACT: (100.0, 100.0),
        Tier.FAMILY: (80.0, 90.0),
        Tier.NEUTRAL: (50.0, 70.0),
        Tier.OFF_TREND: (20.0, 50.0),
        Tier.OPPOSED: (0.0, 20.0),
    },
    "fabric": {
        Tier.EXACT: (100.0, 100.0),
        Tier.FAMILY: (80.0, 90.0),
        Tier.NEUTRAL: (50.0, 65.0),
        Tier.OFF_TREND: (20.0, 50.0),
        Tier.OPPOSED: (0.0, 20.0),
    },
    "style": {
        Tier.EXACT: (100.0, 100.0),
        Tier.FAMILY: (80.0, 90.0),
        Tier.NEUTRAL: (60.0, 70.0),
        Tier.OFF_TREND: (20.0, 50.0),
        Tier.OPPOSED: (0.0, 20.0),
    },
}

# Hue distances in degrees
FAMILY_HUE_DISTANCE = 30.0
OPPOSED_HUE_DISTANCE = 150.0
NEUTRAL_SATURATION = 0.15
NEUTRAL_VALUE = 0.15

_HEX_IN_TEXT_RE = re.compile(r"#([0-9a-fA-F]{6}|[0-9a-fA-F]{3})\b")
_HEX_IDENTIFIER_RE = re.compile(r"^#?([0-9a-fA-F]{6}|[0-9a-fA-F]{3})$")

COLOR_NAMES: Dict[str, str] = {
    "black": "#000000", "preto": "#000000",
    "white": "#ffffff", "branco": "#ffffff", "off white": "#f5f3ea",
    "ivory": "#fffff0", "marfim": "#fffff0",
    "cream": "#f3e9d2", "creme": "#f3e9d2",
    "gray": "#808080", "grey": "#808080", "cinza": "#808080",
    "beige": "#d9c8a9", "bege": "#d9c8a9", "nude": "#e3bc9a",
    "camel": "#c19a6b", "khaki": "#c3b091", "caqui": "#c3b091",
    "brown": "#6f4e37", "marrom": "#6f4e37", "chocolate": "#5b3a29",
    "red": "#d0312d", "vermelho": "#d0312d",
    "burgundy": "#800020", "bordo": "#800020", "vinho": "#722f37",
    "pink": "#f4a6c0", "rosa": "#f4a6c0", "fuchsia": "#c2185b", "pink choque": "#ff1493",
    "coral": "#ff7f50", "terracotta": "#c9643b", "terracota": "#c9643b",
    "orange": "#ff8c00", "laranja": "#ff8c00",
    "yellow": "#ffd700", "amarelo": "#ffd700", "butter yellow": "#f8e38c",
    "amarelo manteiga": "#f8e38c", "mustard": "#d4a017", "mostarda": "#d4a017",
    "gold": "#d4af37", "dourado": "#d4af37",
    "green": "#2e8b57", "verde": "#2e8b57", "olive": "#708238", "oliva": "#708238",
    "verde oliva": "#708238", "sage": "#9caf88", "verde salvia": "#9caf88",
    "mint": "#98ff98", "menta": "#98ff98", "teal": "#008080",
    "blue": "#1f5fbf", "azul": "#1f5fbf", "navy": "#1a2b5c", "azul marinho": "#1a2b5c",
    "marinho": "#1a2b5c", "sky blue": "#87ceeb", "azul claro": "#87ceeb",
    "azul bebe": "#a9d0f5", "cobalt": "#0047ab", "azul cobalto": "#0047ab",
    "purple": "#6a0dad", "roxo": "#6a0dad", "lilac": "#c8a2c8", "lilas": "#c8a2c8",
    "lavender": "#b57edc", "lavanda": "#b57edc",
    "silver": "#c0c0c0", "prata": "#c0c0c0",
}

NEUTRAL_COLOR_NAMES: FrozenSet[str] = frozenset({
    "black", "preto", "white", "branco", "off white", "ivory", "marfim", "cream",
    "creme", "gray", "grey", "cinza", "beige", "bege", "nude", "camel", "khaki",
    "caqui", "silver", "prata",
})


def normalize_text(text: str) -> str:
    """Lowercase, strip accents and collapse punctuation to single spaces."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(re.sub(r"[^a-z0-9#]+", " ", stripped.lower()).split())


def find_terms(text: str, vocabulary: Sequence[str]) -> Set[str]:
    """Vocabulary terms (single or multi-word) appearing as whole words in ``text``."""
    padded = f" {normalize_text(text)} "
    return {term for term in vocabulary if f" {term} " in padded}


@dataclass(frozen=True)
class Match:
    tier: Tier
    value: float
    reference: Optional[TrendReference]
    reasoning: str


def _place(kind: TrendKind, tier: Tier, strength: float) -> float:
    low, high = BANDS[kind][tier]
    strength = max(0.0, min(1.0, strength))
    return round(low + (high - low) * strength, 2)


def _is_top(reference: TrendReference, top: Optional[TrendReference]) -> bool:
    return top is not None and reference == top


# --- Color ---

def _hex_to_rgb(hex_code: str) -> Tuple[float, float, float]:
    digits = hex_code.lstrip("#")
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    return tuple(int(digits[i:i + 2], 16) / 255.0 for i in (0, 2, 4))


def _name_to_hex(text: str) -> Optional[str]:
    # Longest phrase wins so "azul marinho" beats "azul"
    terms = find_terms(text, list(COLOR_NAMES))
    if not terms:
        return None
    return COLOR_NAMES[max(terms, key=lambda term: (len(term), term))]


def extract_hex(text: str, identifier: str = "") -> Optional[str]:
    """Hex code of a color from its identifier, inline ``#rrggbb`` text or known name."""
    match = _HEX_IDENTIFIER_RE.match(identifier.strip()) if identifier else None
    if match:
        return "#" + match.group(1).lower()
    match = _HEX_IN_TEXT_RE.search(text or "")
    if match:
        return "#" + match.group(1).lower()
    return _name_to_hex(text)


@dataclass(frozen=True)
class _Color:
    name: str
    hex_code: Optional[str]
    hsv: Optional[Tuple[float, float, float]]
    neutral: bool

    @classmethod
    def parse(cls, text: str, identifier: str = "") -> "_Color":
        hex_code = extract_hex(text, identifier)
        hsv = colorsys.rgb_to_hsv(*_hex_to_rgb(hex_code)) if hex_code else None
        neutral = bool(find_terms(text, list(NEUTRAL_COLOR_NAMES)))
        if hsv is not None and (hsv[1] < NEUTRAL_SATURATION or hsv[2] < NEUTRAL_VALUE):
            neutral = True
        name = normalize_text(_HEX_IN_TEXT_RE.sub(" ", text or ""))
        return cls(name=name, hex_code=hex_code, hsv=hsv, neutral=neutral)


def _hue_distance(a: Tuple[float, float, float], b: Tuple[float, float, float]) -> float:
    diff = abs(a[0] - b[0]) * 360.0
    return min(diff, 360.0 - diff)


def _match_color(detected: _Color, reference: TrendReference, top: Optional[TrendReference]) -> Match:
    target = _Color.parse(reference.name, reference.identifier)
    confidence = reference.confidence / 100.0

    same_name = bool(detected.name) and detected.name == target.name
    same_hex = detected.hex_code is not None and detected.hex_code == target.hex_code
    if same_name or same_hex:
        if _is_top(reference, top):
            return Match(Tier.EXACT, 100.0, reference, f"Color matches the top trend '{reference.name}'")
        return Match(Tier.FAMILY, _place("color", Tier.FAMILY, 1.0), reference,
                     f"Color matches trending color '{reference.name}'")

    if detected.neutral and target.neutral:
        closeness = 1.0
        if detected.hsv is not None and target.hsv is not None:
            closeness = 1.0 - abs(detected.hsv[2] - target.hsv[2])
        return Match(Tier.FAMILY, _place("color", Tier.FAMILY, confidence * closeness), reference,
                     f"Neutral color in the same family as trending neutral '{reference.name}'")
    if detected.neutral:
        return Match(Tier.NEUTRAL, _place("color", Tier.NEUTRAL, 0.5), reference,
                     f"Neutral, versatile color; trend '{reference.name}' is chromatic")
    if target.neutral:
        return Match(Tier.OFF_TREND, _place("color", Tier.OFF_TREND, 0.5), reference,
                     f"Chromatic color against neutral trend '{reference.name}'")

    if detected.hsv is None or target.hsv is None:
        shared = set(detected.name.split()) & set(target.name.split())
        if shared:
            return Match(Tier.FAMILY, _place("color", Tier.FAMILY, confidence), reference,
                         f"Color shares the '{' '.join(sorted(shared))}' family with trend '{reference.name}'")
        return Match(Tier.OFF_TREND, _place("color", Tier.OFF_TREND, 0.5), reference,
                     f"Color could not be placed relative to trend '{reference.name}'")

    distance = _hue_distance(detected.hsv, target.hsv)
    if distance <= FAMILY_HUE_DISTANCE:
        closeness = 1.0 - distance / FAMILY_HUE_DISTANCE
        return Match(Tier.FAMILY, _place("color", Tier.FAMILY, confidence * (0.5 + 0.5 * closeness)),
                     reference, f"Color is in the same hue family as trend '{reference.name}'")
    if distance >= OPPOSED_HUE_DISTANCE:
        closeness = (180.0 - distance) / (180.0 - OPPOSED_HUE_DISTANCE)
        return Match(Tier.OPPOSED, _place("color", Tier.OPPOSED, closeness), reference,
                     f"Color is opposite to trend '{reference.name}' on the color wheel")
    closeness = 1.0 - (distance - FAMILY_HUE_DISTANCE) / (OPPOSED_HUE_DISTANCE - FAMILY_HUE_DISTANCE)
    return Match(Tier.OFF_TREND, _place("color", Tier.OFF_TREND, closeness), reference,
                 f"Color is off-trend relative to '{reference.name}'")


# --- Fabric and style vocabularies ---

@dataclass(frozen=True)
class Vocabulary:
    families: Dict[str, FrozenSet[str]]
    versatile: FrozenSet[str]
    opposed: Dict[str, FrozenSet[str]] = field(default_factory=dict)

    @property
    def terms(self) -> Tuple[str, ...]:
        known = set(self.versatile)
        for members in self.families.values():
            known |= members
        return tuple(sorted(known))

    def families_of(self, terms: Set[str]) -> Set[str]:
        return {family for family, members in self.families.items() if terms & members}


FABRICS = Vocabulary(
    families={
        "plant": frozenset({"cotton", "algodao", "linen", "linho", "hemp", "canhamo", "ramie"}),
        "animal": frozenset({"wool", "la", "cashmere", "silk", "seda", "alpaca", "mohair", "merino"}),
        "cellulosic": frozenset({"viscose", "rayon", "modal", "lyocell", "liocel", "tencel", "cupro"}),
        "synthetic": frozenset({"polyester", "poliester", "nylon", "polyamide", "poliamida", "elastane",
                                "elastano", "spandex", "lycra", "acrylic", "acrilico"}),
        "denim": frozenset({"denim", "jeans", "chambray", "twill", "sarja"}),
        "leather": frozenset({"leather", "couro", "suede", "camurca", "faux leather", "couro sintetico"}),
        "knit": frozenset({"knit", "trico", "tricot", "jersey", "malha", "ribbed", "canelado"}),
    },
    versatile=frozenset({"cotton", "algodao", "jersey", "malha", "denim", "jeans", "twill", "sarja"}),
    opposed={
        "plant": frozenset({"synthetic"}),
        "animal": frozenset({"synthetic"}),
        "synthetic": frozenset({"plant", "animal"}),
    },
)

STYLES = Vocabulary(
    families={
        "relaxed": frozenset({"oversized", "oversize", "relaxed", "loose", "baggy", "wide leg", "pantalona",
                              "boxy", "slouchy", "amplo", "ampla", "solto", "solta"}),
        "fitted": frozenset({"slim", "skinny", "fitted", "bodycon", "justo", "justa", "ajustado",
                             "ajustada", "colado", "colada"}),
        "cropped": frozenset({"cropped", "crop"}),
        "tailored": frozenset({"tailored", "tailoring", "alfaiataria", "blazer", "structured", "estruturado"}),
        "athleisure": frozenset({"athleisure", "sporty", "esportivo", "jogger", "tracksuit", "legging"}),
        "flowy": frozenset({"flowy", "fluido", "fluida", "maxi", "boho", "wrap", "envelope"}),
        "retro": frozenset({"y2k", "vintage", "retro", "70s", "90s", "anos 70", "anos 90"}),
        "minimal": frozenset({"minimalist", "minimal", "minimalista", "quiet luxury", "old money", "clean"}),
        "utility": frozenset({"cargo", "utility", "workwear", "utilitario"}),
        "streetwear": frozenset({"streetwear", "hoodie", "moletom", "graphic tee"}),
    },
    versatile=frozenset({"classic", "classico", "basic", "basico", "straight", "reto", "reta", "regular",
                         "a line", "evase", "midi", "shirt dress", "chemise"}),
    opposed={
        "relaxed": frozenset({"fitted"}),
        "fitted": frozenset({"relaxed"}),
        "tailored": frozenset({"athleisure", "streetwear"}),
        "athleisure": frozenset({"tailored"}),
        "streetwear": frozenset({"tailored", "minimal"}),
        "minimal": frozenset({"streetwear", "retro"}),
        "retro": frozenset({"minimal"}),
    },
)


def _match_vocabulary(
    kind: TrendKind,
    vocabulary: Vocabulary,
    detected_text: str,
    reference: TrendReference,
    top: Optional[TrendReference],
) -> Match:
    label = "Fabric" if kind == "fabric" else "Style"
    confidence = reference.confidence / 100.0
    detected_terms = find_terms(detected_text, vocabulary.terms)
    reference_terms = find_terms(reference.name, vocabulary.terms)

    same_name = normalize_text(detected_text) == normalize_text(reference.name)
    if same_name or detected_terms & reference_terms:
        if _is_top(reference, top):
            return Match(Tier.EXACT, 100.0, reference, f"{label} matches the top trend '{reference.name}'")
        return Match(Tier.FAMILY, _place(kind, Tier.FAMILY, 1.0), reference,
                     f"{label} matches trending {kind} '{reference.name}'")

    detected_families = vocabulary.families_of(detected_terms)
    reference_families = vocabulary.families_of(reference_terms)
    shared = detected_families & reference_families
    if shared:
        return Match(Tier.FAMILY, _place(kind, Tier.FAMILY, confidence), reference,
                     f"{label} is in the same family ({', '.join(sorted(shared))}) as trend '{reference.name}'")

    if detected_terms & vocabulary.versatile:
        return Match(Tier.NEUTRAL, _place(kind, Tier.NEUTRAL, 0.5), reference,
                     f"{label} is versatile rather than aligned with trend '{reference.name}'")

    opposed_to = set()
    for family in reference_families:
        opposed_to |= vocabulary.opposed.get(family, frozenset())
    if detected_families & opposed_to:
        return Match(Tier.OPPOSED, _place(kind, Tier.OPPOSED, 1.0 - confidence), reference,
                     f"{label} runs against trend '{reference.name}'")

    return Match(Tier.OFF_TREND, _place(kind, Tier.OFF_TREND, 0.5), reference,
                 f"{label} is off-trend relative to '{reference.name}'")


def _best(matches: Sequence[Match]) -> Match:
    best = matches[0]
    for match in matches[1:]:
        if match.value > best.value:
            best = match
    return best


def match_color(detected: str, references: Sequence[TrendReference], top: Optional[TrendReference]) -> Match:
    parsed = _Color.parse(detected)
    return _best([_match_color(parsed, reference, top) for reference in references])


def match_fabric(detected: str, references: Sequence[TrendReference], top: Optional[TrendReference]) -> Match:
    return _best([_match_vocabulary("fabric", FABRICS, detected, reference, top) for reference in references])


def match_style(detected: str, references: Sequence[TrendReference], top: Optional[TrendReference]) -> Match:
    return _best([_match_vocabulary("style", STYLES, detected, reference, top) for reference in references])


def to_sub_score(kind: TrendKind, match: Match) -> SubScore:
    return SubScore(kind=kind, value=match.value, reasoning=match.reasoning)
