import csv
import json
from datetime import datetime
from pathlib import Path

import pytest

from errimpact.cli import main
from errimpact.data_models import Channel, Session
from errimpact.pipeline import run_analysis
from errimpact.utils import PipelineError, TransportError

CONVERSION = "Click on Pay"


def millis(*args) -> int:
    return int(datetime(*args).timestamp() * 1000)


def session(user, error="", start=None, converted=False):
    start = start if start is not None else millis(2024, 1, 1, 12)
    actions = ("Load", CONVERSION) if converted else ("Load",)
    return Session(user, error, start, start + 1000, actions, Channel.MOBILE)


class FakeClient:
    def __init__(self, sessions_by_error):
        self.sessions_by_error = sessions_by_error
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True

    def fetch_candidate_errors(self, config):
        return list(self.sessions_by_error)

    def fetch_sessions(self, config, error):
        return self.sessions_by_error[error]


SESSIONS = {
    "minor": [session("a", "minor")],
    "major": [
        session("b", "major"),
        session("c", "major"),
        session("d", "major"),
        session("d", start=millis(2024, 1, 3), converted=True),
    ],
}


@pytest.fixture
def files(tmp_path: Path):
    environments = tmp_path / "envs.yaml"
    environments.write_text(
        "prod:\n  name: Production\n  env-url: https://prod.example.com\n  env-token: dt0c01.A.B\n"
        "dev:\n  name: Development\n  env-url: https://dev.example.com\n  env-token: dt0c01.C.D\n",
        encoding="utf-8",
    )
    config = tmp_path / "config.yaml"
    config.write_text(
        "checkout:\n"
        "  environments: [prod, dev]\n"
        "  use_cases: [incurred_costs]\n"
        "  properties:\n"
        "    error_prop: errorMessage\n"
        f"    conversion: {CONVERSION}\n"
        "    cost_of_error: 10\n",
        encoding="utf-8",
    )
    return environments, config


def read_report(path: Path):
    with path.open(newline="", encoding="utf-8") as handle:
        return list(csv.DictReader(handle))


def test_run_writes_ranked_report_per_environment(tmp_path: Path, files):
    environments, config = files
    clients = []

    def factory(environment):
        clients.append(FakeClient(SESSIONS))
        return clients[-1]

    report = run_analysis(environments, config, tmp_path / "out", client_factory=factory)

    assert len(report.reports) == 2
    assert all(client.closed for client in clients)
    assert {path.parent.name for path in report.reports} == {"Production", "Development"}
    rows = read_report(report.reports[0])
    assert [row["Error"] for row in rows] == ["major", "minor"]
    major = rows[0]
    assert major["Impacted_Users"] == "3"
    assert major["Lost_Users"] == "2"
    assert major["costs_incurred"] == "20"
    assert major["costs_incurred_28d"] == "80"
    assert major["Total_Impact"] == "20"
    assert json.loads(major["User_Breakdown"]) == [["Mobile", 2], ["Desktop", 0], ["Tablet", 0]]
    assert json.loads(major["Date_Breakdown"]) == [["01 Jan", 2]]
    assert "lost_money" not in major


def test_failing_environment_does_not_stop_others(tmp_path: Path, files):
    environments, config = files

    def factory(environment):
        if environment.env_id == "prod":
            raise TransportError("connection refused")
        return FakeClient(SESSIONS)

    with pytest.raises(PipelineError):
        run_analysis(environments, config, tmp_path / "out", client_factory=factory)
    assert list((tmp_path / "out" / "Development").glob("*_checkout.csv"))
    assert not (tmp_path / "out" / "Production").exists()


def test_specific_environment_skips_others(tmp_path: Path, files):
    environments, config = files
    seen = []

    def factory(environment):
        seen.append(environment.env_id)
        return FakeClient(SESSIONS)

    report = run_analysis(environments, config, tmp_path / "out", specific_environment="dev", client_factory=factory)
    assert seen == ["dev"]
    assert len(report.reports) == 1


def test_dry_run_does_not_query(tmp_path: Path, files):
    environments, config = files

    def factory(environment):
        raise AssertionError("dry run must not query")

    report = run_analysis(environments, config, tmp_path / "out", dry_run=True, client_factory=factory)
    assert report.reports == []


def test_invalid_configuration_fails_run(tmp_path: Path, files):
    environments, config = files
    config.write_text("checkout:\n  use_cases: [agent_hours]\n  properties: {error_prop: e, conversion: c}\n")
    with pytest.raises(PipelineError):
        run_analysis(environments, config, tmp_path / "out", dry_run=True)


def test_cli_dry_run_exit_codes(tmp_path: Path, files, monkeypatch):
    environments, config = files
    monkeypatch.chdir(tmp_path)
    args = ["analyse", "-e", str(environments), "-c", str(config), "--dry-run", str(tmp_path / "out")]
    assert main(args) == 0
    assert list((tmp_path / ".logs").glob("*.log"))

    config.write_text("", encoding="utf-8")
    assert main(args) == 1


def test_bad_configurations_do_not_stop_good_ones(tmp_path: Path, files):
    environments, config = files
    config.write_text(
        "zero-margin:\n"
        "  environments: [prod]\n"
        "  use_cases: [lost_basket]\n"
        "  properties: {error_prop: errorMessage, conversion: Pay, basket_prop: basket, margin: 0}\n"
        "stale:\n"
        "  environments: [qa]\n"
        "  properties: {error_prop: errorMessage, conversion: Pay}\n"
        "good:\n"
        "  environments: [prod]\n"
        "  use_cases: [incurred_costs]\n"
        "  properties:\n"
        "    error_prop: errorMessage\n"
        f"    conversion: {CONVERSION}\n"
        "    cost_of_error: 10\n",
        encoding="utf-8",
    )

    with pytest.raises(PipelineError):
        run_analysis(environments, config, tmp_path / "out", client_factory=lambda environment: FakeClient(SESSIONS))

    reports = list((tmp_path / "out" / "Production").glob("*.csv"))
    assert [path.name.split("_", 1)[1] for path in reports] == ["good.csv"]
    assert [row["Error"] for row in read_report(reports[0])] == ["major", "minor"]
