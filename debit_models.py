import json
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# ---------------------------
# Canonical vocabulary
# ---------------------------
# Attribute name on DebitRecord -> canonical key used in persisted JSON.
CANONICAL_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("periodo_apuracao", "período de apuração"),
    ("apurado", "apurado"),
    ("beneficio_inss", "benefício inss"),
    ("resumo_das", "resumo do das a ser gerado"),
    ("principal", "principal"),
    ("multa", "multa"),
    ("juros", "juros"),
    ("total", "total"),
    ("data_vencimento", "data de vencimento"),
    ("data_acolhimento", "data de acolhimento"),
)
CANONICAL_KEYS: Tuple[str, ...] = tuple(key for _, key in CANONICAL_FIELDS)
ATTR_BY_KEY: Dict[str, str] = {key: attr for attr, key in CANONICAL_FIELDS}

MIN_IDENTIFIER_DIGITS = 11

NOT_ENROLLED_RE = re.compile(r"nao\s+optante", re.I)
YEAR_TOKEN_RE = re.compile(r"\b(\d{4})\b")


def normalize_identifier(raw: Optional[str]) -> str:
    """Keep only the digits of a CNPJ/CPF as typed by the user."""
    return re.sub(r"\D", "", str(raw or ""))


def normalize_text(s: Optional[str]) -> str:
    return re.sub(r"\s+", " ", str(s or "")).strip().lower()


def fold_accents(s: str) -> str:
    decomposed = unicodedata.normalize("NFKD", s)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def is_not_enrolled(label: Optional[str]) -> bool:
    return bool(NOT_ENROLLED_RE.search(fold_accents(label or "")))


# ---------------------------
# Records
# ---------------------------
@dataclass
class Subject:
    raw_id: str
    display_name: Optional[str] = None
    display_name_source: Optional[str] = None

    @property
    def digits(self) -> str:
        return normalize_identifier(self.raw_id)

    def set_display_name(self, name: Optional[str], source: str) -> bool:
        """Last writer wins; blank names never overwrite a captured one."""
        name = re.sub(r"\s+", " ", name or "").strip()
        if not name:
            return False
        self.display_name = name
        self.display_name_source = source
        return True


@dataclass
class YearOption:
    value: str
    label: str
    eligible: bool
    # Element handle for custom dropdowns; only meaningful on the page it came from.
    handle: Any = field(default=None, repr=False, compare=False)

    @classmethod
    def classify(cls, value: Optional[str], label: Optional[str], disabled: bool = False, handle: Any = None) -> "YearOption":
        label = re.sub(r"\s+", " ", label or "").strip()
        value = (value or "").strip()
        match = YEAR_TOKEN_RE.search(value) or YEAR_TOKEN_RE.search(label)
        year = match.group(1) if match else (value or label)
        eligible = bool(match) and not disabled and not is_not_enrolled(label)
        return cls(value=value or year, label=label or year, eligible=eligible, handle=handle)

    @property
    def year(self) -> Optional[str]:
        match = YEAR_TOKEN_RE.search(self.label) or YEAR_TOKEN_RE.search(self.value)
        return match.group(1) if match else None


@dataclass
class DebitRecord:
    year: str
    source: str  # "table", "loose" or "non-table"
    raw: str = ""
    periodo_apuracao: Optional[str] = None
    apurado: Optional[str] = None
    beneficio_inss: Optional[str] = None
    resumo_das: Optional[str] = None
    principal: Optional[str] = None
    multa: Optional[str] = None
    juros: Optional[str] = None
    total: Optional[str] = None
    data_vencimento: Optional[str] = None
    data_acolhimento: Optional[str] = None
    extra: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    currencies: List[str] = field(default_factory=list)
    parts: List[str] = field(default_factory=list)
    amount: Optional[float] = None

    def get(self, key: str) -> Optional[str]:
        """Look up a value by canonical key or by a synthetic ``col_N`` key."""
        attr = ATTR_BY_KEY.get(key)
        if attr:
            return getattr(self, attr)
        for k, v in self.extra:
            if k == key:
                return v
        return None

    @property
    def header_mapped(self) -> bool:
        return self.source == "table"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"year": self.year, "source": self.source}
        if self.header_mapped:
            for attr, key in CANONICAL_FIELDS:
                out[key] = getattr(self, attr)
            out["extra"] = [[k, v] for k, v in self.extra]
        else:
            out["parts"] = list(self.parts)
            out["amount"] = self.amount
        out["currencies"] = list(self.currencies)
        out["raw"] = self.raw
        return out


@dataclass
class YearResult:
    option: YearOption
    records: List[DebitRecord] = field(default_factory=list)

    @property
    def label(self) -> str:
        return self.option.label

    def to_dict(self) -> Dict[str, Any]:
        return {"year": self.label, "items": [r.to_dict() for r in self.records]}


@dataclass
class AggregateResult:
    subject: Subject
    years: List[YearResult] = field(default_factory=list)
    all_years: List[str] = field(default_factory=list)
    eligible_years: List[str] = field(default_factory=list)
    ineligible_years: List[str] = field(default_factory=list)
    requested_year: Optional[str] = None
    requested_month: Optional[str] = None

    @property
    def record_count(self) -> int:
        return sum(len(y.records) for y in self.years)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subjectId": self.subject.digits,
            "displayName": self.subject.display_name,
            "requestedYear": self.requested_year,
            "requestedMonth": self.requested_month,
            "allYears": list(self.all_years),
            "eligibleYears": list(self.eligible_years),
            "ineligibleYears": list(self.ineligible_years),
            "years": [y.to_dict() for y in self.years],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)
