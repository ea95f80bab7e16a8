"""Report generation for check results and alerts."""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from ..models import Alert, CheckResult, Severity, utcnow


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReportOptions:
    formats: tuple[str, ...] = ("json",)
    min_severity: Severity = Severity.LOW
    include_recommendations: bool = True


@dataclass(frozen=True)
class ReportSummary:
    report_id: str
    recommendations: list[str] = field(default_factory=list)
    paths: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"report_id": self.report_id, "recommendations": list(self.recommendations), "paths": dict(self.paths)}


@runtime_checkable
class ReportGenerator(Protocol):
    async def generate(
        self,
        session_id: str,
        results: list[CheckResult],
        alerts: list[Alert],
        options: ReportOptions,
    ) -> ReportSummary: ...


def build_recommendations(results: list[CheckResult], alerts: list[Alert]) -> list[str]:
    recommendations: list[str] = []
    failed = [r for r in results if not r.passed]
    if results and len(failed) / len(results) > 0.5:
        recommendations.append("More than half of the scenarios failed - check for a systemic outage first")
    for result in failed[:5]:
        reason = result.error or "assertion failed"
        recommendations.append(f"Investigate scenario '{result.scenario_name}': {reason}")

    slow = [r for r in results if r.execution_time_ms > 10_000]
    if slow:
        names = ", ".join(sorted({r.scenario_name for r in slow}))
        recommendations.append(f"Profile slow scenarios: {names}")

    seen: set[str] = set()
    for alert in sorted(alerts, key=lambda a: a.severity.rank, reverse=True):
        for action in alert.recovery_actions:
            if action not in seen:
                seen.add(action)
                recommendations.append(action)

    if not recommendations:
        recommendations.append("No issues detected - keep monitoring")
    return recommendations


class FileReportGenerator:
    """Writes JSON and Markdown reports into ``reports_directory``."""

    def __init__(self, reports_directory: str | Path = "reports"):
        self.reports_dir = Path(reports_directory)
        self.reports_dir.mkdir(parents=True, exist_ok=True)

        template_dir = Path(__file__).parent / "templates"
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(enabled_extensions=("html",)),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def build_report(
        self,
        session_id: str,
        results: list[CheckResult],
        alerts: list[Alert],
        options: ReportOptions,
    ) -> dict[str, Any]:
        included = [a for a in alerts if a.severity.at_least(options.min_severity)]
        total = len(results)
        passed = sum(1 for r in results if r.passed)
        total_time = sum(r.execution_time_ms for r in results)

        return {
            "report_id": f"report_{session_id}_{utcnow().strftime('%Y%m%d_%H%M%S_%f')}",
            "session_id": session_id,
            "generation_timestamp": utcnow().isoformat(),
            "summary": {
                "total_scenarios": total,
                "passed": passed,
                "failed": total - passed,
                "success_rate": (passed / total * 100) if total else 0,
                "total_execution_time_ms": total_time,
                "average_execution_time_ms": total_time / total if total else 0,
                "alerts": len(included),
                "alerts_by_severity": dict(Counter(a.severity.value for a in included)),
            },
            "results": [r.to_dict() for r in results],
            "alerts": [a.to_dict() for a in included],
            "recommendations": build_recommendations(results, included) if options.include_recommendations else [],
        }

    async def generate(
        self,
        session_id: str,
        results: list[CheckResult],
        alerts: list[Alert],
        options: ReportOptions | None = None,
    ) -> ReportSummary:
        options = options or ReportOptions()
        report = self.build_report(session_id, results, alerts, options)
        report_id = report["report_id"]
        paths: dict[str, str] = {}

        if "json" in options.formats:
            json_path = self.reports_dir / f"{report_id}.json"
            with open(json_path, 'w') as f:
                json.dump(report, f, indent=2, default=str)
            paths["json"] = str(json_path)

        if "markdown" in options.formats:
            md_path = self.reports_dir / f"{report_id}.md"
            template = self.jinja_env.get_template("report.md.j2")
            md_path.write_text(template.render(report=report))
            paths["markdown"] = str(md_path)

        logger.info("Generated monitoring report",
                    report_id=report_id,
                    formats=list(paths),
                    success_rate=report["summary"]["success_rate"])

        return ReportSummary(report_id=report_id, recommendations=report["recommendations"], paths=paths)
