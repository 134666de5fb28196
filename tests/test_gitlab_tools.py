"""Tests for GitLab CI/CD variable dumping and secure file scanning."""

import logging

import httpx
import pytest
import respx

from conftest import AWS_KEY, RecordingReporter, SlowDetector
from ci_leak_scanner.models import FilterKind, HitType, RepoFilter
from ci_leak_scanner.platforms.gitlab_tools import dump_variables, scan_secure_files
from ci_leak_scanner.platforms.registry import create_adapter
from ci_leak_scanner.scanners.detector import Detector

BASE_URL = "https://gitlab.example.com"
API = f"{BASE_URL}/api/v4"


def project(pid, path):
    return {"id": pid, "path_with_namespace": path, "web_url": f"{BASE_URL}/{path}"}


@pytest.fixture
def gitlab(make_options):
    return create_adapter(make_options())


@pytest.fixture
def reporter():
    return RecordingReporter()


class TestVariables:
    @respx.mock
    @pytest.mark.asyncio
    async def test_project_variables_scanned(self, gitlab, reporter):
        respx.get(f"{API}/projects").mock(return_value=httpx.Response(200, json=[
            project(1, "owner/r1"), project(2, "owner/r2"),
        ]))
        respx.get(f"{API}/projects/1/variables").mock(return_value=httpx.Response(200, json=[
            {"key": "AWS_ACCESS_KEY_ID", "value": AWS_KEY, "protected": True, "masked": True},
            {"key": "DEPLOY_ENV", "value": "production", "environment_scope": "prod"},
        ]))
        respx.get(f"{API}/projects/2/variables").mock(return_value=httpx.Response(403))

        async with gitlab.transport:
            rows = await dump_variables(gitlab, RepoFilter(kind=FilterKind.OWNED), Detector(), reporter)

        assert rows == [
            {"project": "owner/r1", "key": "AWS_ACCESS_KEY_ID", "value": AWS_KEY,
             "protected": True, "masked": True, "environment": "*"},
            {"project": "owner/r1", "key": "DEPLOY_ENV", "value": "production",
             "protected": False, "masked": False, "environment": "prod"},
        ]
        [finding] = reporter.findings
        assert finding.type == HitType.VARIABLE
        assert finding.rule == "aws-access-key-id"
        assert finding.file == "AWS_ACCESS_KEY_ID"
        assert finding.url == f"{BASE_URL}/owner/r1/-/settings/ci_cd"

    @respx.mock
    @pytest.mark.asyncio
    async def test_group_variables(self, gitlab, reporter):
        route = respx.get(f"{API}/groups/acme/infra/variables").mock(return_value=httpx.Response(200, json=[
            {"key": "TOKEN", "value": ""},
        ]))

        async with gitlab.transport:
            rows = await dump_variables(gitlab, RepoFilter(), Detector(), reporter, group="acme/infra")

        assert [r["project"] for r in rows] == ["acme/infra"]
        assert reporter.findings == []
        assert b"acme%2Finfra" in route.calls.last.request.url.raw_path


class TestSecureFiles:
    @respx.mock
    @pytest.mark.asyncio
    async def test_files_downloaded_scanned_and_saved(self, gitlab, reporter, tmp_path):
        respx.get(f"{API}/projects/owner/r1").mock(return_value=httpx.Response(200, json=project(1, "owner/r1")))
        respx.get(f"{API}/projects/1/secure_files").mock(return_value=httpx.Response(200, json=[
            {"id": 4, "name": "deploy.env"},
            {"id": 5, "name": "broken.bin"},
        ]))
        respx.get(f"{API}/projects/1/secure_files/4/download").mock(
            return_value=httpx.Response(200, content=f"AWS_ACCESS_KEY_ID={AWS_KEY}\n".encode())
        )
        respx.get(f"{API}/projects/1/secure_files/5/download").mock(return_value=httpx.Response(404))
        out = tmp_path / "secure"

        async with gitlab.transport:
            count = await scan_secure_files(
                gitlab, RepoFilter(kind=FilterKind.REPOSITORY, value="owner/r1"), Detector(), reporter,
                output_dir=str(out),
            )

        assert count == 1
        [finding] = reporter.findings
        assert (finding.type, finding.file, finding.value) == (HitType.SECURE_FILE, "deploy.env", AWS_KEY)
        assert (out / "1_deploy.env").read_bytes().startswith(b"AWS_ACCESS_KEY_ID=")

    @respx.mock
    @pytest.mark.asyncio
    async def test_inaccessible_project_skipped(self, gitlab, reporter):
        respx.get(f"{API}/projects").mock(return_value=httpx.Response(200, json=[project(1, "owner/r1")]))
        respx.get(f"{API}/projects/1/secure_files").mock(return_value=httpx.Response(403))

        async with gitlab.transport:
            count = await scan_secure_files(gitlab, RepoFilter(), Detector(), reporter)

        assert count == 0
        assert reporter.findings == []


class TestDetectorTimeout:
    @respx.mock
    @pytest.mark.asyncio
    async def test_slow_secure_file_skipped(self, make_options, reporter, caplog):
        caplog.set_level(logging.DEBUG, logger="ci_leak_scanner")
        gitlab = create_adapter(make_options(hit_timeout="200ms"))
        respx.get(f"{API}/projects/owner/r1").mock(return_value=httpx.Response(200, json=project(1, "owner/r1")))
        respx.get(f"{API}/projects/1/secure_files").mock(return_value=httpx.Response(200, json=[
            {"id": 4, "name": "huge.pem"},
            {"id": 5, "name": "deploy.env"},
        ]))
        respx.get(f"{API}/projects/1/secure_files/4/download").mock(
            return_value=httpx.Response(200, content=b"slow " * 100)
        )
        respx.get(f"{API}/projects/1/secure_files/5/download").mock(
            return_value=httpx.Response(200, content=f"AWS_ACCESS_KEY_ID={AWS_KEY}\n".encode())
        )

        async with gitlab.transport:
            count = await scan_secure_files(
                gitlab, RepoFilter(kind=FilterKind.REPOSITORY, value="owner/r1"), SlowDetector(), reporter,
            )

        assert count == 2
        assert [f.file for f in reporter.findings] == ["deploy.env"]
        [timeout] = [r for r in caplog.records if r.getMessage() == "Detector timeout"]
        assert timeout.levelno == logging.WARNING
        assert timeout.fields == {"repository": "owner/r1", "file": "huge.pem"}

    @respx.mock
    @pytest.mark.asyncio
    async def test_slow_variable_skipped(self, make_options, reporter, caplog):
        caplog.set_level(logging.DEBUG, logger="ci_leak_scanner")
        gitlab = create_adapter(make_options(hit_timeout="200ms"))
        respx.get(f"{API}/groups/acme/variables").mock(return_value=httpx.Response(200, json=[
            {"key": "BLOB", "value": "slow " * 100},
            {"key": "AWS_ACCESS_KEY_ID", "value": AWS_KEY},
        ]))

        async with gitlab.transport:
            rows = await dump_variables(gitlab, RepoFilter(), SlowDetector(), reporter, group="acme")

        assert [r["key"] for r in rows] == ["BLOB", "AWS_ACCESS_KEY_ID"]
        assert [f.file for f in reporter.findings] == ["AWS_ACCESS_KEY_ID"]
        assert any(r.getMessage() == "Detector timeout" for r in caplog.records)
