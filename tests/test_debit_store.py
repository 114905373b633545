"""Tests for per-year and combined result persistence"""

import json

from debit_models import DebitRecord, YearOption, YearResult
from debit_store import COMBINED_FILENAME, build_aggregate, year_filename


def _result(label, count):
    records = [DebitRecord(year=label, source="loose", raw=f"{label} R$ 70,60", amount=70.6) for _ in range(count)]
    return YearResult(YearOption.classify(label, label), records)


def test_year_filename_is_filesystem_safe():
    assert year_filename("2024") == "debitos_2024.json"
    assert year_filename("2022 - Não optante") == "debitos_2022_-_Não_optante.json"
    assert year_filename("") == "debitos_sem_ano.json"


def test_build_aggregate_splits_eligibility(subject):
    options = [YearOption.classify("2024", "2024"), YearOption.classify("2022", "2022 - Não optante")]
    aggregate = build_aggregate(subject, options, [_result("2024", 2)], requested_year="2024", requested_month="1")
    assert aggregate.all_years == ["2024", "2022 - Não optante"]
    assert aggregate.eligible_years == ["2024"]
    assert aggregate.ineligible_years == ["2022 - Não optante"]
    assert aggregate.record_count == 2


def test_year_file_is_written_even_without_records(store, subject):
    path = store.write_year(subject, _result("2023", 0))
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data == {"subjectId": "00000000000191", "displayName": None, "year": "2023", "items": []}


def test_combined_file_roundtrip_and_name_update(store, subject):
    options = [YearOption.classify("2024", "2024"), YearOption.classify("2022", "2022 - Não optante")]
    aggregate = build_aggregate(subject, options, [_result("2024", 1)], requested_year="2024", requested_month="1")
    path = store.write_combined(aggregate)
    assert path.name == COMBINED_FILENAME

    assert store.update_display_name("ACME COMERCIO LTDA")
    data = store.load_combined()
    assert data["displayName"] == "ACME COMERCIO LTDA"
    assert data["years"][0]["items"][0]["amount"] == 70.6
    assert "2022 - Não optante" in path.read_text(encoding="utf-8")


def test_name_update_without_combined_file(store):
    assert store.load_combined() is None
    assert not store.update_display_name("ACME")
