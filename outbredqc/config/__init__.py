"""Configuration for outbredqc."""

from outbredqc.config.qc_config import PipelineConfig, QCThresholds, load_config

__all__ = ["PipelineConfig", "QCThresholds", "load_config"]
