"""
Debit table classification and parsing.

The portal renders the DAS debit listing as a plain ``<table>`` on some screens and
as styled grid/list markup on others, with header wording that drifts between
releases. Parsing therefore works on the page HTML alone (``page.content()``), so the
same captured markup always yields the same records:

  1) every table-like container is enumerated (tables plus grid/list containers)
  2) containers with neither a currency amount nor the year digits are skipped
  3) tables with a recognisable header row are mapped column by column
  4) anything else falls back to a loose per-row scan keeping raw text and parts
"""
import logging
import re
from typing import Dict, List, Optional, Sequence, Set

from bs4 import BeautifulSoup, Tag

from context_retry import with_context_retry
from debit_models import (
    ATTR_BY_KEY,
    CANONICAL_KEYS,
    YEAR_TOKEN_RE,
    DebitRecord,
    fold_accents,
    normalize_text,
)

logger = logging.getLogger(__name__)

BS_PARSER = "html.parser"

CURRENCY_RE = re.compile(r"R\$\s*[\d.]+,\d{2}|[\d.]+,\d{2}")
AMOUNT_SHAPE_RE = re.compile(r"\d+[.,]\d{2}")
AMOUNT_TOKEN_RE = re.compile(r"(?:R\$\s*)?-?[\d.,]*\d[.,]\d{2}")
BR_AMOUNT_RE = re.compile(r"^-?(?:\d{1,3}(?:\.\d{3})+|\d+),\d{2}$")
PART_SPLIT_RE = re.compile(r"\t+|\s{2,}|\|")

CONTAINER_SELECTOR = 'table, div[class*="table"], .datatable, .grid, .list'
LOOSE_ROW_SELECTOR = 'div[class*="row"], tr, li'
HEADER_SCAN_ROWS = 3

# ---------------------------
# Header vocabularies
# ---------------------------
# Accent-folded header text -> canonical key.
STRICT_VOCABULARY: Dict[str, str] = {fold_accents(k): k for k in CANONICAL_KEYS}

BROAD_VOCABULARY: Dict[str, str] = dict(STRICT_VOCABULARY)
BROAD_VOCABULARY.update(
    {
        "periodo de apuracao": "período de apuração",
        "periodo": "período de apuração",
        "mes": "período de apuração",
        "pa": "período de apuração",
        "valor apurado": "apurado",
        "beneficio inss": "benefício inss",
        "inss": "benefício inss",
        "resumo do das": "resumo do das a ser gerado",
        "das": "resumo do das a ser gerado",
        "guia": "resumo do das a ser gerado",
        "valor principal": "principal",
        "valor total": "total",
        "vencimento": "data de vencimento",
        "data vencimento": "data de vencimento",
        "acolhimento": "data de acolhimento",
        "data acolhimento": "data de acolhimento",
    }
)

HEADER_VOCABULARIES: Dict[str, Dict[str, str]] = {
    "strict": STRICT_VOCABULARY,
    "broad": BROAD_VOCABULARY,
}


def get_vocabulary(name: Optional[str]) -> Dict[str, str]:
    try:
        return HEADER_VOCABULARIES[(name or "strict").lower()]
    except KeyError:
        raise ValueError(f"Unknown header vocabulary: {name!r}") from None


# ---------------------------
# Amounts
# ---------------------------
def parse_amount(token: Optional[str]) -> Optional[float]:
    """
    Parse a Brazilian-formatted amount ("R$ 1.234,56") into a float (1234.56).

    Tokens without a comma-delimited two-digit fraction, or otherwise malformed,
    give None instead of raising.
    """
    if not token:
        return None
    t = re.sub(r"\s+", "", str(token).replace("R$", "").replace("\xa0", " "))
    if not BR_AMOUNT_RE.match(t):
        return None
    try:
        return round(float(t.replace(".", "").replace(",", ".")), 2)
    except ValueError:
        return None


def find_currencies(text: str) -> List[str]:
    return CURRENCY_RE.findall(text or "")


def year_digits(year_label: str) -> str:
    match = YEAR_TOKEN_RE.search(str(year_label or ""))
    return match.group(1) if match else str(year_label or "").strip()


# ---------------------------
# Headers
# ---------------------------
def _fold_header(text: str) -> str:
    folded = fold_accents(normalize_text(text))
    return folded.strip(" :;.-*")


def match_header(text: str, vocabulary: Dict[str, str]) -> Optional[str]:
    """Exact vocabulary match first, then the longest keyword found as whole words."""
    folded = _fold_header(text)
    if not folded:
        return None
    if folded in vocabulary:
        return vocabulary[folded]
    best = None
    for keyword, key in vocabulary.items():
        if re.search(rf"\b{re.escape(keyword)}\b", folded):
            if best is None or len(keyword) > len(best[0]):
                best = (keyword, key)
    return best[1] if best else None


def _is_exact_header(text: str, vocabulary: Dict[str, str]) -> bool:
    return _fold_header(text) in vocabulary


def find_header_row(rows: Sequence[List[str]], vocabulary: Dict[str, str]) -> Optional[int]:
    """
    Index of the header row among the first rows, or None.

    Rows carrying amounts are never headers; a row with an exact vocabulary cell wins
    over an earlier row that only matches approximately.
    """
    approximate = None
    for i, cells in enumerate(rows[:HEADER_SCAN_ROWS]):
        if not cells or any(CURRENCY_RE.search(c) for c in cells):
            continue
        if any(_is_exact_header(c, vocabulary) for c in cells):
            return i
        if approximate is None and any(match_header(c, vocabulary) for c in cells):
            approximate = i
    return approximate


def map_header_keys(header_cells: Sequence[str], vocabulary: Dict[str, str]) -> List[Optional[str]]:
    """Canonical key per column; unmatched or repeated keys become None."""
    keys: List[Optional[str]] = []
    used: Set[str] = set()
    for text in header_cells:
        key = match_header(text, vocabulary)
        if key in used:
            key = None
        if key:
            used.add(key)
        keys.append(key)
    return keys


# ---------------------------
# Rows
# ---------------------------
def _cell_text(cell: Tag) -> str:
    return re.sub(r"\s+", " ", cell.get_text(" ", strip=True)).strip()


def _row_cells(row: Tag) -> List[Tag]:
    return row.find_all(["td", "th"], recursive=False)


def _row_text(row: Tag) -> str:
    cells = _row_cells(row)
    if cells:
        return "\t".join(_cell_text(c) for c in cells).strip()
    return re.sub(r"[ \r\f\v]+", " ", row.get_text(" ", strip=True)).strip()


def _is_candidate_text(text: str, year: str) -> bool:
    return bool(text) and (bool(CURRENCY_RE.search(text)) or (bool(year) and year in text))


def header_record(cells: Sequence[str], keys: Sequence[Optional[str]], row_text: str, year_label: str) -> DebitRecord:
    record = DebitRecord(year=year_label, source="table", raw=row_text)
    for k in range(max(len(cells), len(keys))):
        value = cells[k] if k < len(cells) else None
        value = value or None
        key = keys[k] if k < len(keys) else None
        if key:
            setattr(record, ATTR_BY_KEY[key], value)
        else:
            record.extra.append((f"col_{k}", value))
    record.currencies = find_currencies(row_text)
    return record


def loose_record(row_text: str, year_label: str, source: str) -> DebitRecord:
    parts = [p.strip() for p in PART_SPLIT_RE.split(row_text) if p and p.strip()]
    amount = None
    for part in reversed(parts):
        if AMOUNT_SHAPE_RE.search(part):
            tokens = AMOUNT_TOKEN_RE.findall(part)
            amount = parse_amount(tokens[-1]) if tokens else None
            break
    return DebitRecord(
        year=year_label,
        source=source,
        raw=row_text,
        parts=parts,
        amount=amount,
        currencies=find_currencies(row_text),
    )


def _own_rows(table: Tag) -> List[Tag]:
    return [tr for tr in table.find_all("tr") if tr.find_parent("table") is table]


def parse_table(table: Tag, year_label: str, vocabulary: Dict[str, str]) -> List[DebitRecord]:
    year = year_digits(year_label)
    rows = _own_rows(table)
    if not rows:
        return []
    cell_rows = [[_cell_text(c) for c in _row_cells(r)] for r in rows]
    header_index = find_header_row(cell_rows, vocabulary)

    records: List[DebitRecord] = []
    if header_index is not None:
        keys = map_header_keys(cell_rows[header_index], vocabulary)
        for row, cells in zip(rows[header_index + 1:], cell_rows[header_index + 1:]):
            text = _row_text(row)
            if not any(cells) or not _is_candidate_text(text, year):
                continue
            records.append(header_record(cells, keys, text, year_label))
        return records

    for row in rows:
        text = _row_text(row)
        if _is_candidate_text(text, year):
            records.append(loose_record(text, year_label, "loose"))
    return records


def parse_debit_tables(html: str, year_label: str, vocabulary: str = "strict") -> List[DebitRecord]:
    """Pure function of the page markup: same HTML, same records, same order."""
    vocab = get_vocabulary(vocabulary)
    year = year_digits(year_label)
    soup = BeautifulSoup(html or "", BS_PARSER)

    records: List[DebitRecord] = []
    seen_tables: Set[int] = set()
    seen_rows: Set[int] = set()

    for container in soup.select(CONTAINER_SELECTOR):
        if id(container) in seen_tables:
            continue
        text = container.get_text(" ", strip=True)
        if not _is_candidate_text(text, year):
            continue

        tables = [container] if container.name == "table" else container.find_all("table")
        if tables:
            for table in tables:
                if id(table) in seen_tables:
                    continue
                seen_tables.add(id(table))
                if not _is_candidate_text(table.get_text(" ", strip=True), year):
                    continue
                records.extend(parse_table(table, year_label, vocab))
            continue

        # Grid/list markup without a real table.
        for row in container.select(LOOSE_ROW_SELECTOR):
            if id(row) in seen_rows:
                continue
            seen_rows.add(id(row))
            if row.select_one(LOOSE_ROW_SELECTOR) is not None:
                continue  # only leaf rows
            row_text = _row_text(row)
            if _is_candidate_text(row_text, year):
                records.append(loose_record(row_text, year_label, "non-table"))

    logger.debug(f"[tables] {len(records)} record(s) parsed for {year_label}")
    return records


async def extract_debits(page, year_label: str, vocabulary: str = "strict") -> List[DebitRecord]:
    html = await page.content()
    return parse_debit_tables(html, year_label, vocabulary)


async def safe_extract_debits(page, year_label: str, vocabulary: str = "strict", max_attempts: int = 3) -> List[DebitRecord]:
    return await with_context_retry(
        lambda: extract_debits(page, year_label, vocabulary),
        max_attempts=max_attempts,
        label=f"extract {year_label}",
    )
