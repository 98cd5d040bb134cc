"""
Tests for the normalizer mergers and runner.
"""

import json

import pytest

from ioc_ingest.core.config import NormalizeConfig
from ioc_ingest.core.errors import UnknownNormalizerError
from ioc_ingest.core.models import NormalizeStatus
from ioc_ingest.normalize.mergers import IPListMerger, read_csv_rows
from ioc_ingest.normalize.runner import NormalizeRunner, format_bytes

SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
MD5 = "d41d8cd98f00b204e9800998ecf8427e"

URLHAUS_CSV = (
    "################################\n"
    "# abuse.ch URLhaus Database Dump\n"
    "# id,dateadded,url,url_status,last_online,threat,tags,urlhaus_link,reporter\n"
    '"1","2024-01-01 00:00:00","http://evil.example.test/a.exe","online","2024-01-01",'
    '"malware_download","elf","https://urlhaus.example.test/url/1/","anon"\n'
    '"2","2024-01-01 00:00:00","http://evil.example.test/b.exe","offline","2024-01-01",'
    '"malware_download","","https://urlhaus.example.test/url/2/","anon"\n'
)


@pytest.fixture
def normalize_config(app_config):
    return app_config.normalize


@pytest.fixture
def runner(normalize_config):
    return NormalizeRunner(normalize_config)


class TestReadCsvRows:
    """Test CSV reading with commented headers."""

    def test_commented_header(self, tmp_path):
        path = tmp_path / "urlhaus_online.csv"
        path.write_text(URLHAUS_CSV)

        rows = read_csv_rows(path)

        assert len(rows) == 2
        assert rows[0]["url"] == "http://evil.example.test/a.exe"
        assert rows[0]["threat"] == "malware_download"

    def test_plain_header(self, tmp_path):
        path = tmp_path / "phishtank.csv"
        path.write_text('"URL","Target"\nhttp://a.example.test,Bank\n')
        assert read_csv_rows(path) == [{"url": "http://a.example.test", "target": "Bank"}]


class TestIPListMerger:
    """Test IP list merging."""

    def test_merge_and_dedup(self, runner, feeds_dir, output_dir):
        (feeds_dir / "ciarmy.txt").write_text("192.0.2.2\n192.0.2.1\n")
        (feeds_dir / "spamhaus.txt").write_text("; header\n198.51.100.0/24 ; SBL1\n192.0.2.1 ; SBL2\n")

        result = runner.run("ip")

        assert result["status"] == "success"
        assert result["added"] == 3
        assert result["files"] == 2
        merged = (output_dir / "merged_ip_list.txt").read_text().split("\n")
        assert merged == ["192.0.2.1", "192.0.2.2", "198.51.100.0/24"]

    def test_idempotent_on_unchanged_input(self, runner, feeds_dir, output_dir):
        (feeds_dir / "ciarmy.txt").write_text("192.0.2.1\n")
        runner.run("ip")
        before = (output_dir / "merged_ip_list.txt").read_text()
        tracking = output_dir / ".normalize_tracking.json"
        tracking_before = tracking.read_text()

        result = runner.run("ip")

        assert result["status"] == "skipped"
        assert result["reason"] == "no_new_files"
        assert (output_dir / "merged_ip_list.txt").read_text() == before
        assert tracking.read_text() == tracking_before

    def test_write_failure_leaves_files_pending(self, runner, feeds_dir, output_dir, monkeypatch):
        (feeds_dir / "ciarmy.txt").write_text("192.0.2.1\n")

        def disk_full(self, records):
            raise OSError("disk full")

        monkeypatch.setattr(IPListMerger, "write_output", disk_full)
        failed = runner.run_all()
        ip_result = next(r for r in failed["results"] if r["task"] == "ip")
        assert ip_result["status"] == "failed"
        assert runner.tracking.get("ciarmy.txt").status == NormalizeStatus.FAILED

        monkeypatch.undo()
        result = runner.run("ip")

        assert result["status"] == "success"
        assert result["added"] == 1
        assert (output_dir / "merged_ip_list.txt").read_text() == "192.0.2.1"

    def test_incremental_merge(self, runner, feeds_dir, output_dir):
        (feeds_dir / "ciarmy.txt").write_text("192.0.2.1\n")
        runner.run("ip")
        (feeds_dir / "emerging_threats.txt").write_text("192.0.2.1\n203.0.113.9\n")

        result = runner.run("ip")

        assert result["previous"] == 1
        assert result["added"] == 1
        assert result["total"] == 2


class TestCsvMergers:
    """Test threat, phishing and software merges."""

    def test_threat_intel(self, runner, feeds_dir, output_dir):
        (feeds_dir / "urlhaus_online.csv").write_text(URLHAUS_CSV)

        result = runner.run("threat")

        assert result["added"] == 2
        rows = read_csv_rows(output_dir / "merged_threat_data.csv")
        assert [r["id"] for r in rows] == ["1", "2"]
        assert rows[0]["indicator_type"] == "url"
        assert rows[0]["source"] == "urlhaus_online"
        assert rows[0]["threat_type"] == "malware_download"

    def test_phishing(self, runner, feeds_dir, output_dir):
        (feeds_dir / "phishstats_page1.json").write_text(json.dumps([
            {"id": 1, "url": "http://login.example.test", "ip": "198.51.100.7", "countryname": "NL"},
        ]))
        (feeds_dir / "phishtank.csv").write_text(
            "phish_id,url,phish_detail_url,submission_time,verified,verification_time,online,target\n"
            "1,http://login.example.test,x,2024-01-01,yes,2024-01-01,yes,Bank\n"
            "2,http://other.example.test,x,2024-01-01,yes,2024-01-01,yes,Shop\n"
        )

        result = runner.run("phishing")

        assert result["total"] == 2
        rows = read_csv_rows(output_dir / "merged_phishing_data.csv")
        by_url = {r["url"]: r for r in rows}
        assert by_url["http://login.example.test"]["source"] == "phishstats"
        assert by_url["http://login.example.test"]["country"] == "NL"
        assert by_url["http://other.example.test"]["target"] == "Shop"

    def test_software(self, runner, feeds_dir, output_dir):
        (feeds_dir / "malshare_getlist.txt").write_text(f"{MD5}\n{SHA256}\n")
        (feeds_dir / "bazaar_yara_stats.json").write_text(json.dumps({"data": [
            {"sha256_hash": SHA256, "yara_rule": "win_emotet"},
        ]}))

        result = runner.run("software")

        assert result["total"] == 2
        rows = read_csv_rows(output_dir / "merged_software_data.csv")
        assert {r["source"] for r in rows} == {"bazaar_yara", "malshare"}

    def test_unreadable_file_marked_failed(self, runner, feeds_dir):
        (feeds_dir / "phishstats_page1.json").write_text("{broken")

        result = runner.run("phishing")

        assert result["added"] == 0
        assert runner.tracking.get("phishstats_page1.json").status == NormalizeStatus.FAILED
        assert runner.has_new_files() is True


class TestNormalizeRunner:
    """Test runner orchestration."""

    def test_run_all(self, runner, feeds_dir):
        (feeds_dir / "ciarmy.txt").write_text("192.0.2.1\n")

        result = runner.run_all()

        summary = result["summary"]
        assert summary["total"] == 4
        assert summary["successful"] == 1
        assert summary["skipped"] == 3
        assert summary["total_added"] == 1

    def test_disabled_globally(self, normalize_config, feeds_dir):
        (feeds_dir / "ciarmy.txt").write_text("192.0.2.1\n")
        runner = NormalizeRunner(normalize_config.model_copy(update={"run_jobs": False}))

        result = runner.run_all()

        assert result["summary"]["skipped"] == 4
        assert all(r["reason"] == "run_jobs_disabled" for r in result["results"])

    def test_disabled_merger(self, normalize_config, feeds_dir):
        (feeds_dir / "ciarmy.txt").write_text("192.0.2.1\n")
        runner = NormalizeRunner(normalize_config.model_copy(update={"ip_lists": False}))

        assert runner.run("ip")["reason"] == "disabled"
        assert runner.has_new_files() is False

    def test_unknown_task(self, runner):
        with pytest.raises(UnknownNormalizerError):
            runner.run("dns")

    def test_stats_and_reset(self, runner, feeds_dir):
        (feeds_dir / "ciarmy.txt").write_text("192.0.2.1\n192.0.2.2\n")
        runner.run("ip")

        stats = runner.stats()

        files = {f["name"]: f for f in stats["files"]}
        assert files["merged_ip_list.txt"]["count"] == 2
        assert files["merged_threat_data.csv"]["exists"] is False
        assert "ciarmy.txt" in stats["tracking"]

        assert runner.reset_tracking()["message"].startswith("Tracking file deleted")
        assert runner.reset_tracking()["message"] == "No tracking file found"

    def test_default_config(self, monkeypatch):
        monkeypatch.delenv("RUN_JOBS", raising=False)
        assert NormalizeConfig().run_jobs is False


class TestFormatBytes:
    """Test human-readable sizes."""

    def test_format_bytes(self):
        assert format_bytes(0) == "0 Bytes"
        assert format_bytes(512) == "512 Bytes"
        assert format_bytes(1536) == "1.5 KB"
        assert format_bytes(1048576) == "1 MB"
