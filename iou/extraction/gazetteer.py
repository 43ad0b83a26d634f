"""
Fixed gazetteer and pattern set for Dutch government text.

Entries are phrase lists that map a surface form (Dutch or English) to
a display name and entity type. Patterns cover the open-ended classes:
dates, amounts, honorific person names, article citations and
"... Act" statute names.

All phrases and patterns are written against NFKC-normalized,
case-folded text.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from iou.models.enums import EntityType
from iou.utils.text import collapse_whitespace, normalize_with_offsets, strip_diacritics


@dataclass(frozen=True)
class GazetteerEntry:
    """One named thing and every surface form that refers to it."""
    canonical_name: str
    entity_type: EntityType
    confidence: float
    surface_forms: tuple[str, ...] = field(default_factory=tuple)


# ---- Locations ---- #

PROVINCES = (
    "Flevoland", "Noord-Holland", "Zuid-Holland", "Utrecht", "Gelderland",
    "Overijssel", "Drenthe", "Groningen", "Friesland", "Zeeland",
    "Noord-Brabant", "Limburg",
)

# Province names that are also the name of a city; bare mentions are the city.
_PROVINCE_CITIES = {"Utrecht", "Groningen"}

MUNICIPALITIES = (
    "Almere", "Amsterdam", "Rotterdam", "Den Haag", "Utrecht", "Eindhoven",
    "Groningen", "Tilburg", "Almelo", "Lelystad", "Dronten", "Zeewolde", "Urk",
    "Noordoostpolder",
)

_CITY_ALIASES = {
    "Den Haag": ("The Hague", "'s-Gravenhage"),
}


# ---- Organizations ---- #

MINISTRIES: dict[str, tuple[str, ...]] = {
    "Ministerie van Binnenlandse Zaken en Koninkrijksrelaties": (
        "Ministerie van Binnenlandse Zaken", "Ministerie van BZK", "BZK",
        "Ministry of the Interior and Kingdom Relations", "Ministry of the Interior",
    ),
    "Ministerie van Financiën": ("Ministry of Finance",),
    "Ministerie van Infrastructuur en Waterstaat": (
        "Ministerie van I&W", "Ministry of Infrastructure and Water Management",
    ),
    "Ministerie van Economische Zaken en Klimaat": (
        "Ministerie van Economische Zaken", "Ministerie van EZK", "EZK",
        "Ministry of Economic Affairs and Climate Policy", "Ministry of Economic Affairs",
    ),
    "Ministerie van Justitie en Veiligheid": (
        "Ministerie van J&V", "Ministry of Justice and Security",
    ),
    "Ministerie van Onderwijs, Cultuur en Wetenschap": (
        "Ministerie van Onderwijs", "Ministerie van OCW", "OCW",
        "Ministry of Education, Culture and Science", "Ministry of Education",
    ),
    "Ministerie van Volksgezondheid, Welzijn en Sport": (
        "Ministerie van Volksgezondheid", "Ministerie van VWS", "VWS",
        "Ministry of Health, Welfare and Sport", "Ministry of Health",
    ),
    "Ministerie van Sociale Zaken en Werkgelegenheid": (
        "Ministerie van Sociale Zaken", "Ministerie van SZW", "SZW",
        "Ministry of Social Affairs and Employment",
    ),
    "Ministerie van Buitenlandse Zaken": ("Ministry of Foreign Affairs",),
    "Ministerie van Defensie": ("Ministry of Defence", "Ministry of Defense"),
    "Ministerie van Landbouw, Natuur en Voedselkwaliteit": (
        "Ministerie van Landbouw", "Ministerie van LNV", "LNV",
        "Ministry of Agriculture, Nature and Food Quality", "Ministry of Agriculture",
    ),
}

AGENCIES: dict[str, tuple[str, ...]] = {
    "Rijkswaterstaat": (),
    "Belastingdienst": ("Dutch Tax Administration",),
    "Autoriteit Persoonsgegevens": ("Dutch Data Protection Authority",),
    "Raad van State": ("Council of State",),
    "Tweede Kamer": ("House of Representatives",),
    "Eerste Kamer": ("Senate",),
    "Provinciale Staten": ("Provincial Council",),
    "Gedeputeerde Staten": ("Provincial Executive",),
    "Nationaal Archief": ("National Archives",),
    "Europese Commissie": ("European Commission",),
}


# ---- Laws ---- #

LAWS: dict[str, tuple[str, ...]] = {
    "Wet open overheid": ("Woo", "Open Government Act"),
    "Algemene verordening gegevensbescherming": (
        "AVG", "GDPR", "General Data Protection Regulation",
    ),
    "Archiefwet": ("Public Records Act", "Archives Act"),
    "Omgevingswet": ("Environment and Planning Act",),
    "Algemene wet bestuursrecht": ("Awb", "General Administrative Law Act"),
    "Wet openbaarheid van bestuur": ("Wob", "Government Information (Public Access) Act"),
    "Gemeentewet": ("Municipalities Act",),
    "Provinciewet": ("Provinces Act",),
    "Waterschapswet": ("Water Boards Act",),
}


# ---- Policy terms ---- #

POLICY_TERMS: dict[str, tuple[str, ...]] = {
    "mobiliteit": ("mobility",),
    "duurzaamheid": ("sustainability",),
    "energietransitie": ("energy transition",),
    "circulaire economie": ("circular economy",),
    "klimaatadaptatie": ("climate adaptation",),
    "woningbouw": ("housing construction", "housing"),
    "stikstof": ("nitrogen",),
    "biodiversiteit": ("biodiversity",),
    "ruimtelijke ordening": ("spatial planning",),
    "omgevingsvisie": ("environmental vision",),
}


def default_entries() -> list[GazetteerEntry]:
    """The built-in gazetteer."""
    entries: list[GazetteerEntry] = []

    for province in PROVINCES:
        forms = [f"Province of {province}", f"Provincie {province}"]
        if province not in _PROVINCE_CITIES:
            forms.append(province)
        entries.append(GazetteerEntry(
            f"Province of {province}", EntityType.LOCATION, 0.95, tuple(forms),
        ))

    for city in MUNICIPALITIES:
        entries.append(GazetteerEntry(
            city, EntityType.LOCATION, 0.85, (city, *_CITY_ALIASES.get(city, ())),
        ))
        entries.append(GazetteerEntry(
            f"Gemeente {city}",
            EntityType.ORGANIZATION,
            0.93,
            (f"Gemeente {city}", f"Municipality of {city}"),
        ))

    for name, aliases in MINISTRIES.items():
        entries.append(GazetteerEntry(name, EntityType.ORGANIZATION, 0.97, (name, *aliases)))

    for name, aliases in AGENCIES.items():
        entries.append(GazetteerEntry(name, EntityType.ORGANIZATION, 0.9, (name, *aliases)))

    for name, aliases in LAWS.items():
        entries.append(GazetteerEntry(name, EntityType.LAW, 0.98, (name, *aliases)))

    for term, aliases in POLICY_TERMS.items():
        entries.append(GazetteerEntry(term, EntityType.POLICY, 0.8, (term, *aliases)))

    return entries


# ---- Patterns ---- #

_DUTCH_MONTHS = (
    "januari|februari|maart|april|mei|juni|juli|augustus|september|oktober|november|december"
)
_ENGLISH_MONTHS = (
    "january|february|march|april|may|june|july|august|september|october|november|december"
)

DATE_PATTERNS = (
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    re.compile(r"\b\d{1,2}[-/]\d{1,2}[-/]\d{2,4}\b"),
    re.compile(rf"\b\d{{1,2}}\s+(?:{_DUTCH_MONTHS}|{_ENGLISH_MONTHS})\s+\d{{4}}\b"),
    re.compile(rf"\b(?:{_ENGLISH_MONTHS})\s+\d{{1,2}},?\s+\d{{4}}\b"),
)

MONEY_PATTERNS = (
    re.compile(r"(?:€|eur\b|euro\b)\s*\d{1,3}(?:[.,]\d{3})*(?:[.,]\d{1,2})?(?:\s*(?:miljoen|million|mln))?"),
    re.compile(r"\b\d{1,3}(?:[.,]\d{3})*(?:[.,]\d{1,2})?(?:\s*(?:miljoen|million|mln))?\s*(?:euro|eur)\b"),
)

_HONORIFICS = r"mr|mrs|ms|dr|prof|drs|ir|dhr|mevr|mw|mevrouw|de heer"
_PARTICLES = r"van der|van den|van de|van|de|den|der|ter|ten|te"

# Group "name" is the person's name without the honorific.
PERSON_PATTERN = re.compile(
    rf"\b(?:{_HONORIFICS})\.?\s+"
    rf"(?P<name>(?:[a-z]\.\s*){{0,3}}(?:(?:{_PARTICLES})\s+)?[a-z][a-z'\-]+)"
)

ARTICLE_PATTERN = re.compile(
    r"\b(?:artikel|article|art\.)\s*\d+(?:\.\d+)*(?:\s*(?:lid|sub|paragraph)\s*\d+)?"
)

# "Something Act" statutes not in the gazetteer; capitalisation is checked
# against the original text.
ACT_PATTERN = re.compile(r"\b(?:[a-z][a-z'\-]*\s+){1,4}act\b")


@dataclass
class CompiledGazetteer:
    """Gazetteer phrases compiled into one regex per entity type."""
    patterns: dict[EntityType, re.Pattern]
    lookup: dict[tuple[EntityType, str], GazetteerEntry]

    def entry_for(self, entity_type: EntityType, matched: str) -> Optional[GazetteerEntry]:
        return self.lookup.get((entity_type, collapse_whitespace(matched)))


def _normalize_phrase(phrase: str) -> str:
    return collapse_whitespace(normalize_with_offsets(phrase)[0])


def _phrase_regex(phrase: str) -> str:
    return r"\s+".join(re.escape(word) for word in phrase.split(" "))


def compile_gazetteer(entries: list[GazetteerEntry]) -> CompiledGazetteer:
    """Compile entries into longest-first alternations per entity type.

    Every surface form is also registered without diacritics, so
    "Financien" matches "Financiën".
    """
    lookup: dict[tuple[EntityType, str], GazetteerEntry] = {}
    phrases: dict[EntityType, set[str]] = {}

    for entry in entries:
        for form in entry.surface_forms:
            normalized = _normalize_phrase(form)
            for variant in {normalized, strip_diacritics(normalized)}:
                # First registration wins; more specific entries come first.
                lookup.setdefault((entry.entity_type, variant), entry)
                phrases.setdefault(entry.entity_type, set()).add(variant)

    patterns = {}
    for entity_type, forms in phrases.items():
        ordered = sorted(forms, key=lambda p: (-len(p), p))
        alternation = "|".join(_phrase_regex(p) for p in ordered)
        patterns[entity_type] = re.compile(rf"(?<![\w])(?:{alternation})(?![\w])")

    return CompiledGazetteer(patterns=patterns, lookup=lookup)
