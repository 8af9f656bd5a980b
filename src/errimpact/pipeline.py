"""High level orchestration of the error impact analysis."""
from __future__ import annotations

import csv
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from .calculations import analyse_sessions, rank_results
from .client import QueryClient
from .config import USE_CASES, AnalysisConfig, Environment
from .data_models import ImpactResult, breakdown_json
from .loader import read_configs, read_environments, select_environments
from .logging_config import active_request_log
from .utils import AnalysisError, PipelineError, format_errors, today_digits

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Environment], QueryClient]


BASE_HEADERS = [
    "Error",
    "Impacted_Users",
    "Unconverted_Users",
    "Lost_Users",
    "User_Breakdown",
    "Date_Breakdown",
]


USE_CASE_HEADERS = {
    "lost_basket": [
        "lost_basket",
        "lost_money",
        "lost_money_14d",
        "lost_money_21d",
        "lost_money_28d",
    ],
    "agent_hours": [
        "lost_agent_hours",
        "lost_agent_hours_14d",
        "lost_agent_hours_21d",
        "lost_agent_hours_28d",
        "hours_lost_cost",
        "hours_lost_cost_14d",
        "hours_lost_cost_21d",
        "hours_lost_cost_28d",
    ],
    "incurred_costs": [
        "costs_incurred",
        "costs_incurred_14d",
        "costs_incurred_21d",
        "costs_incurred_28d",
    ],
}


def default_client_factory(environment: Environment) -> QueryClient:
    return QueryClient(
        environment.url,
        environment.get_token(),
        logger=logging.getLogger("errimpact.client"),
        request_log=active_request_log(),
    )


@dataclass
class RunReport:
    reports: List[Path] = field(default_factory=list)
    errors: Dict[str, List[Exception]] = field(default_factory=dict)

    def add_errors(self, label_prefix: str, errors: List[Exception]) -> None:
        for index, error in enumerate(errors):
            self.errors.setdefault(f"{label_prefix}-{index}", []).append(error)


class Pipeline:
    def __init__(self, client_factory: ClientFactory = default_client_factory):
        self.client_factory = client_factory

    def analyse_environment(self, config: AnalysisConfig, environment: Environment) -> Dict[str, ImpactResult]:
        results: Dict[str, ImpactResult] = {}
        with self.client_factory(environment) as client:
            errors = client.fetch_candidate_errors(config)
            for error in errors:
                logger.info("\t\tAnalysing error %s", error)
                sessions = client.fetch_sessions(config, error)
                logger.debug("\t\tLoaded %d user sessions", len(sessions))
                result = analyse_sessions(sessions, error, config)
                logger.info("\t\t\t%d users got the error", result.impacted_users)
                logger.info("\t\t\t%d users got the error and abandoned", result.unconverted_users)
                results[error] = result
        return results

    def run(
        self,
        config: AnalysisConfig,
        environments: Mapping[str, Environment],
        writer: "OutputWriter",
        restricted: bool = False,
    ) -> tuple[List[Path], List[Exception]]:
        """Analyse one configuration in each of its environments.

        A failing environment is recorded and the remaining ones still run.
        """
        logger.info("Running configuration %s", config.config_id)
        reports: List[Path] = []
        errors: List[Exception] = []
        try:
            selected = select_environments(config, environments, restricted)
        except AnalysisError as exc:
            return reports, [exc]
        for environment in selected:
            logger.info("\tAnalysing environment %s", environment.env_id)
            try:
                results = self.analyse_environment(config, environment)
                reports.append(writer.write_results(results, config, environment))
            except (AnalysisError, OSError) as exc:
                logger.error("\tEnvironment %s failed: %s", environment.env_id, exc)
                errors.append(exc)
        return reports, errors


class OutputWriter:
    def __init__(self, output_dir: Path, clock: Callable[[], float] = time.time):
        self.output_dir = output_dir
        self.clock = clock

    def report_path(self, config: AnalysisConfig, environment: Environment) -> Path:
        return self.output_dir / environment.name / f"{today_digits(self.clock)}_{config.config_id}.csv"

    @staticmethod
    def headers_for(config: AnalysisConfig) -> List[str]:
        headers = list(BASE_HEADERS)
        for name in USE_CASES:
            for use_case in config.use_cases:
                if use_case.name == name:
                    headers.extend(USE_CASE_HEADERS[name])
                    break
        headers.append("Total_Impact")
        return headers

    @staticmethod
    def _row(result: ImpactResult, headers: List[str]) -> Dict[str, object]:
        record = result.as_dict()
        row: Dict[str, object] = {
            "Error": result.error,
            "Impacted_Users": result.impacted_users,
            "Unconverted_Users": result.unconverted_users,
            "Lost_Users": result.lost_users,
            "User_Breakdown": breakdown_json(record["user_breakdown"]),
            "Date_Breakdown": breakdown_json(record["date_breakdown"]),
            "Total_Impact": result.total_impact,
        }
        for header in headers:
            if header not in row:
                row[header] = record.get(header, "")
        return row

    def write_results(
        self, results: Dict[str, ImpactResult], config: AnalysisConfig, environment: Environment
    ) -> Path:
        """Write the ranked results for one configuration/environment pair, atomically."""
        path = self.report_path(config, environment)
        path.parent.mkdir(parents=True, exist_ok=True)
        headers = self.headers_for(config)
        temp_file = tempfile.NamedTemporaryFile(
            "w",
            newline="",
            encoding="utf-8",
            delete=False,
            dir=path.parent,
        )
        try:
            with temp_file:
                writer = csv.DictWriter(temp_file, headers)
                writer.writeheader()
                for result in rank_results(results):
                    writer.writerow(self._row(result, headers))
            os.replace(temp_file.name, path)
        finally:
            if os.path.exists(temp_file.name):
                os.unlink(temp_file.name)
        logger.info("\tReport written to %s", path)
        return path


def run_analysis(
    environments_file: Path,
    config_file: Path,
    output_dir: Path,
    specific_environment: Optional[str] = None,
    dry_run: bool = False,
    client_factory: ClientFactory = default_client_factory,
) -> RunReport:
    """Load both files, analyse every configuration and raise if anything failed.

    Every configuration and environment is processed before errors are reported.
    """
    environments, environment_errors = read_environments(environments_file, specific_environment)
    configs, config_errors = read_configs(config_file)

    report = RunReport()
    report.add_errors("environmentfile-issue", environment_errors)
    report.add_errors("configurationfile-issue", config_errors)

    if not dry_run and environments:
        pipeline = Pipeline(client_factory)
        writer = OutputWriter(Path(output_dir))
        for config in configs.values():
            paths, errors = pipeline.run(config, environments, writer, restricted=bool(specific_environment))
            report.reports.extend(paths)
            report.add_errors(f"{config.config_id}-execution-issue", errors)

    logger.info("Analysis summary:")
    if report.errors:
        logger.error("%s run failed. Errors:", "Validation" if dry_run else "Analysis")
        for label, message in format_errors(report.errors):
            logger.error("\t%s: %s", label, message)
        raise PipelineError("This run completed with errors. Check log for details.")
    logger.info("%s finished without errors.", "Validation" if dry_run else "Execution")
    return report
