from outbredqc.services.pipeline.qc_pipeline import QCPipeline, QCReport

__all__ = ["QCPipeline", "QCReport"]
