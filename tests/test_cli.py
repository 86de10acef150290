"""
Tests for the command line entry point.
"""

import json
import sys
from pathlib import Path

import pandas as pd

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from main import main


def write_workbook(path):
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        pd.DataFrame([["Fulfillment", "ASINs Proportion"], ["FBA", "60%"], ["FBM", "40%"]]).to_excel(
            writer, sheet_name="Fulfillment", index=False, header=False,
        )


class TestCli:

    def run(self, tmp_path, *argv):
        return main(["--store", str(tmp_path / "research.duckdb"), *argv])

    def test_ingest_and_summary(self, tmp_path, capsys):
        workbook = tmp_path / "US-Market-202508-Home.xlsx"
        write_workbook(workbook)

        assert self.run(tmp_path, "ingest", "--file", str(workbook), "--category", "Home & Kitchen") == 0
        payload = json.loads(capsys.readouterr().out)
        [result] = payload["results"]
        assert result["sheet"] == "Fulfillment"
        assert result["ok"] is True
        assert "records" not in result

        dataset_id = str(payload["dataset_id"])
        assert self.run(tmp_path, "summary", "--dataset", dataset_id, "--metrics", "fulfillment_fba") == 0
        summary = json.loads(capsys.readouterr().out)
        assert list(summary["seriesByMetric"]["fulfillment_fba"].values()) == [60.0]

    def test_ingest_missing_file(self, tmp_path):
        assert self.run(tmp_path, "ingest", "--file", str(tmp_path / "missing.xlsx"), "--category", "Toys") == 1

    def test_unknown_category(self, tmp_path):
        assert self.run(tmp_path, "category", "--id", "42") == 1

    def test_load_rules_requires_a_table(self, tmp_path):
        assert self.run(tmp_path, "load-rules") == 1

    def test_load_rules(self, tmp_path, capsys):
        referral = tmp_path / "referral.csv"
        referral.write_text("Category,Fee Percent\nHome & Kitchen,15%\n", encoding="utf-8")
        assert self.run(tmp_path, "load-rules", "--referral", str(referral)) == 0
        assert json.loads(capsys.readouterr().out) == {"referral_fee_rules": 1}
