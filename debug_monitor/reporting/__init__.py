from .report_generator import (
    FileReportGenerator,
    ReportGenerator,
    ReportOptions,
    ReportSummary,
    build_recommendations,
)

__all__ = ["FileReportGenerator", "ReportGenerator", "ReportOptions", "ReportSummary", "build_recommendations"]
