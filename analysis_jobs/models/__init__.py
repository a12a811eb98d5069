from analysis_jobs.models.analysis import Analysis, AnalysisStatus

__all__ = ["Analysis", "AnalysisStatus"]
