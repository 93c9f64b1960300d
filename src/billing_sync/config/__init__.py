"""Configuration module for the billing sync engine."""

from billing_sync.config.logging import bind_run_context, configure_logging
from billing_sync.config.pipelines import (
    BillingPipeline,
    PipelineConfig,
    load_pipeline_config,
)
from billing_sync.config.settings import FlatSettings, get_settings

__all__ = [
    "FlatSettings",
    "get_settings",
    "bind_run_context",
    "configure_logging",
    "BillingPipeline",
    "PipelineConfig",
    "load_pipeline_config",
]
