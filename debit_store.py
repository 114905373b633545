import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from debit_models import AggregateResult, Subject, YearOption, YearResult

logger = logging.getLogger(__name__)

COMBINED_FILENAME = "debitos_all.json"


def year_filename(label: str) -> str:
    slug = re.sub(r"[^\w.-]+", "_", str(label or "")).strip("_.")
    return f"debitos_{slug or 'sem_ano'}.json"


def build_aggregate(
    subject: Subject,
    options: Sequence[YearOption],
    results: Sequence[YearResult],
    requested_year: Optional[str] = None,
    requested_month: Optional[str] = None,
) -> AggregateResult:
    return AggregateResult(
        subject=subject,
        years=list(results),
        all_years=[o.label for o in options],
        eligible_years=[o.label for o in options if o.eligible],
        ineligible_years=[o.label for o in options if not o.eligible],
        requested_year=requested_year,
        requested_month=requested_month,
    )


class DebitStore:
    """
    JSON files for one run: ``debitos_<year>.json`` per year plus ``debitos_all.json``.

    Writes are plain rewrites. Two runs for the same CNPJ into the same directory
    will race on the combined file; callers run one extraction per subject at a time.
    """

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)

    @property
    def combined_path(self) -> Path:
        return self.output_dir / COMBINED_FILENAME

    def year_path(self, label: str) -> Path:
        return self.output_dir / year_filename(label)

    def _write(self, path: Path, payload: Dict[str, Any]) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        return path

    def write_year(self, subject: Subject, result: YearResult) -> Path:
        payload = {
            "subjectId": subject.digits,
            "displayName": subject.display_name,
            "year": result.label,
            "items": [r.to_dict() for r in result.records],
        }
        path = self._write(self.year_path(result.label), payload)
        logger.info(f"Saved {len(result.records)} debit(s) to {path}")
        return path

    def write_combined(self, aggregate: AggregateResult) -> Path:
        path = self._write(self.combined_path, aggregate.to_dict())
        logger.info(f"Saved aggregate for {aggregate.subject.digits} ({len(aggregate.years)} year(s), {aggregate.record_count} row(s)) to {path}")
        return path

    def load_combined(self) -> Optional[Dict[str, Any]]:
        if not self.combined_path.exists():
            return None
        with open(self.combined_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def update_display_name(self, name: str) -> bool:
        """Rewrite only ``displayName`` of an already persisted aggregate."""
        data = self.load_combined()
        if data is None:
            return False
        data["displayName"] = name
        self._write(self.combined_path, data)
        logger.info(f"Updated displayName in {self.combined_path}")
        return True

