import json

import pytest
import requests

from mapbuilder.config import FetchConfig, SourceConfig, load_config
from mapbuilder.fetch import SourceFetcher, _parse_retry_after_seconds, run_fetch_sources


class FakeResponse:
    def __init__(self, status_code, content=b"", headers=None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.headers = {}
        self.calls = []
        self.closed = False

    def get(self, url, timeout=None):
        self.calls.append(url)
        return self.responses.pop(0)

    def close(self):
        self.closed = True


@pytest.fixture
def no_sleep(monkeypatch):
    delays = []
    monkeypatch.setattr("mapbuilder.fetch.time.sleep", delays.append)
    return delays


@pytest.fixture
def fetch_cfg():
    return FetchConfig(
        cache=True,
        request_timeout_s=5,
        user_agent="mapbuilder-tests",
        min_request_interval_s=0.0,
        max_retries=2,
        retry_backoff_s=0.5,
    )


def test_download_retries_on_503(tmp_path, fetch_cfg, no_sleep):
    session = FakeSession(
        [
            FakeResponse(503, headers={"Retry-After": "3"}),
            FakeResponse(200, content=b"payload"),
        ]
    )
    source = SourceConfig(name="admin0", url="https://example.org/a.zip", path=tmp_path / "a.zip")

    record = SourceFetcher(fetch_cfg, session=session).download(source)

    assert source.path.read_bytes() == b"payload"
    assert not (tmp_path / "a.zip.part").exists()
    assert len(session.calls) == 2
    assert session.headers["User-Agent"] == "mapbuilder-tests"
    assert no_sleep == [3.0]
    assert record.size_bytes == 7
    assert len(record.sha256) == 64


def test_download_gives_up_after_max_retries(tmp_path, fetch_cfg, no_sleep):
    session = FakeSession([FakeResponse(503), FakeResponse(503), FakeResponse(503)])
    source = SourceConfig(name="admin0", url="https://example.org/a.zip", path=tmp_path / "a.zip")

    with pytest.raises(requests.HTTPError):
        SourceFetcher(fetch_cfg, session=session).download(source)
    assert len(session.calls) == 3
    assert no_sleep == [0.5, 1.0]
    assert not source.path.exists()


def test_download_does_not_retry_404(tmp_path, fetch_cfg, no_sleep):
    session = FakeSession([FakeResponse(404)])
    source = SourceConfig(name="admin0", url="https://example.org/a.zip", path=tmp_path / "a.zip")

    with pytest.raises(requests.HTTPError):
        SourceFetcher(fetch_cfg, session=session).download(source)
    assert len(session.calls) == 1


def test_download_does_not_retry_403(tmp_path, fetch_cfg, no_sleep):
    session = FakeSession([FakeResponse(403), FakeResponse(200, content=b"payload")])
    source = SourceConfig(name="admin0", url="https://example.org/a.zip", path=tmp_path / "a.zip")

    with pytest.raises(requests.HTTPError, match="403"):
        SourceFetcher(fetch_cfg, session=session).download(source)
    assert len(session.calls) == 1
    assert no_sleep == []
    assert not source.path.exists()


@pytest.mark.parametrize(
    "raw, expected",
    [(None, 0.0), ("", 0.0), ("12", 12.0), ("-4", 0.0), ("Wed, 21 Oct 2015 07:28:00 GMT", 0.0)],
)
def test_parse_retry_after(raw, expected):
    assert _parse_retry_after_seconds(raw) == expected


@pytest.fixture
def fetch_project(tmp_path, config_raw, save_config):
    config_raw["sources"] = [
        {"name": "admin0", "url": "https://example.org/admin0.zip", "path": "data/admin0.zip"},
        {"name": "places", "url": "https://example.org/places.zip", "path": "data/places.zip"},
    ]
    return load_config(save_config(tmp_path, config_raw))


def test_run_fetch_sources_writes_records(fetch_project, no_sleep):
    session = FakeSession([FakeResponse(200, content=b"one"), FakeResponse(200, content=b"two")])

    report = run_fetch_sources(fetch_project, session=session)

    assert report.ok
    assert report.summary["sources_fetched"] == 2
    records = json.loads(report.records_path.read_text(encoding="utf-8"))
    assert [item["name"] for item in records] == ["admin0", "places"]
    assert records[0]["size_bytes"] == 3


def test_run_fetch_sources_reuses_cache(fetch_project, no_sleep):
    first = FakeSession([FakeResponse(200, content=b"one"), FakeResponse(200, content=b"two")])
    run_fetch_sources(fetch_project, session=first)

    second = FakeSession([])
    report = run_fetch_sources(fetch_project, session=second)
    assert report.ok
    assert second.calls == []
    assert report.summary["sources_reused"] == 2

    forced = FakeSession([FakeResponse(200, content=b"new")])
    report = run_fetch_sources(fetch_project, names=["places"], force=True, session=forced)
    assert report.summary["sources_fetched"] == 1
    assert (fetch_project.paths.data_dir / "places.zip").read_bytes() == b"new"


def test_run_fetch_sources_reports_failures(fetch_project, no_sleep):
    session = FakeSession([FakeResponse(404), FakeResponse(200, content=b"two")])

    report = run_fetch_sources(fetch_project, session=session)

    assert not report.ok
    assert report.summary["sources_failed"] == 1
    assert "admin0" in report.errors[0]


def test_run_fetch_sources_unknown_name(fetch_project, no_sleep):
    report = run_fetch_sources(fetch_project, names=["nope"], session=FakeSession([]))
    assert not report.ok
    assert any("nope" in msg for msg in report.warnings)


def test_run_fetch_sources_leaves_given_session_open(fetch_project, no_sleep):
    session = FakeSession([FakeResponse(200, content=b"one"), FakeResponse(200, content=b"two")])

    run_fetch_sources(fetch_project, session=session)

    assert not session.closed


def test_run_fetch_sources_closes_own_session(fetch_project, no_sleep, monkeypatch):
    created = []

    def make_session():
        session = FakeSession([FakeResponse(404), FakeResponse(500), FakeResponse(500), FakeResponse(500)])
        created.append(session)
        return session

    monkeypatch.setattr("mapbuilder.fetch.requests.Session", make_session)

    report = run_fetch_sources(fetch_project)

    assert not report.ok
    assert len(created) == 1
    assert created[0].closed
