from pathlib import Path

import pytest

from salesmap_news.firm_loader import load_firms_from_csv


def test_loads_active_unique_firms_in_file_order(tmp_path: Path):
    path = tmp_path / "firms.csv"
    path.write_text(
        "Firm,Active\nKKR,true\nEQT,yes\n kkr ,true\nBaring,false\n,true\nApollo  Global,\n",
        encoding="utf-8",
    )

    assert load_firms_from_csv(str(path)) == ["KKR", "EQT", "Apollo Global"]


def test_missing_file_yields_empty_list(tmp_path: Path):
    assert load_firms_from_csv(str(tmp_path / "nope.csv")) == []


def test_missing_firm_column_is_rejected(tmp_path: Path):
    path = tmp_path / "firms.csv"
    path.write_text("name\nKKR\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_firms_from_csv(str(path))


def test_bundled_firm_list_loads():
    bundled = Path(__file__).resolve().parents[2] / "data" / "news_firms.csv"
    firms = load_firms_from_csv(str(bundled))

    assert "KKR" in firms
    assert "Baring Private Equity Asia" not in firms
