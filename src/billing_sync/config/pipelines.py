"""Utilities for loading ticket pipeline configuration from YAML."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from billing_sync.config.settings import get_settings

DEFAULT_PIPELINES_FILE = Path(__file__).resolve().parent / "pipelines.yaml"

FORECAST_BUCKETS = ("25", "50", "75", "95")


@dataclass(frozen=True)
class BillingPipeline:
    """Stage layout of one ticket pipeline (manual or automated billing)."""

    pipeline_id: str
    initial_stage: str
    open_stages: frozenset[str]
    invoiced_stages: frozenset[str]
    cancelled_stage: str
    forecast_stages: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PipelineConfig:
    """Both billing pipelines plus the deal-stage bucket lookup."""

    manual: BillingPipeline
    automated: BillingPipeline
    deal_stage_buckets: dict[str, str]
    default_bucket: str = "25"

    def pipeline_for(self, automated: bool) -> BillingPipeline:
        return self.automated if automated else self.manual

    @property
    def forecast_stage_ids(self) -> frozenset[str]:
        """Every stage that marks a ticket as forecast-owned."""
        return frozenset(self.manual.forecast_stages.values()) | frozenset(
            self.automated.forecast_stages.values()
        )

    def is_forecast_stage(self, stage_id: str | None) -> bool:
        if not stage_id:
            return False
        return str(stage_id) in self.forecast_stage_ids

    def is_invoiced_stage(self, stage_id: str | None) -> bool:
        if not stage_id:
            return False
        stage = str(stage_id)
        return stage in self.manual.invoiced_stages or stage in self.automated.invoiced_stages

    def is_open_stage(self, stage_id: str | None) -> bool:
        if not stage_id:
            return False
        stage = str(stage_id)
        return stage in self.manual.open_stages or stage in self.automated.open_stages

    def is_cancelled_stage(self, stage_id: str | None) -> bool:
        if not stage_id:
            return False
        return str(stage_id) in (self.manual.cancelled_stage, self.automated.cancelled_stage)

    def bucket_for_deal_stage(self, deal_stage: str | None) -> str:
        return self.deal_stage_buckets.get(str(deal_stage or ""), self.default_bucket)

    def forecast_stage_for(self, deal_stage: str | None, automated: bool) -> str:
        """Resolve the forecast stage for a deal stage bucket and billing mode."""
        bucket = self.bucket_for_deal_stage(deal_stage)
        stages = self.pipeline_for(automated).forecast_stages
        return stages.get(bucket) or stages[self.default_bucket]


def _stage_list(path: Path, section: str, raw: Any) -> frozenset[str]:
    if raw is None:
        return frozenset()
    if not isinstance(raw, list):
        raise ValueError(f"{path.name}: {section} must be a list")
    return frozenset(str(item) for item in raw)


def _parse_pipeline(path: Path, name: str, data: Any) -> BillingPipeline:
    if not isinstance(data, dict):
        raise ValueError(f"{path.name}: billing.{name} must be a mapping")

    pipeline_id = data.get("pipeline")
    initial_stage = data.get("initial_stage")
    cancelled_stage = data.get("cancelled_stage")
    if not pipeline_id or not initial_stage or not cancelled_stage:
        raise ValueError(
            f"{path.name}: billing.{name} missing pipeline/initial_stage/cancelled_stage"
        )

    forecast_raw = data.get("forecast_stages") or {}
    if not isinstance(forecast_raw, dict):
        raise ValueError(f"{path.name}: billing.{name}.forecast_stages must be a mapping")
    forecast_stages = {str(bucket): str(stage) for bucket, stage in forecast_raw.items()}
    missing = [b for b in FORECAST_BUCKETS if b not in forecast_stages]
    if missing:
        raise ValueError(
            f"{path.name}: billing.{name}.forecast_stages missing buckets {missing}"
        )

    open_stages = _stage_list(path, f"billing.{name}.open_stages", data.get("open_stages"))
    return BillingPipeline(
        pipeline_id=str(pipeline_id),
        initial_stage=str(initial_stage),
        open_stages=open_stages | {str(initial_stage)},
        invoiced_stages=_stage_list(
            path, f"billing.{name}.invoiced_stages", data.get("invoiced_stages")
        ),
        cancelled_stage=str(cancelled_stage),
        forecast_stages=forecast_stages,
    )


def parse_pipeline_config(path: Path) -> PipelineConfig:
    """Parse a pipelines YAML file.

    Raises:
        ValueError: If the file is structurally invalid.
    """
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    billing = data.get("billing")
    if not isinstance(billing, dict):
        raise ValueError(f"{path.name}: billing must be a mapping")

    buckets_raw = data.get("deal_stage_buckets") or {}
    if not isinstance(buckets_raw, dict):
        raise ValueError(f"{path.name}: deal_stage_buckets must be a mapping")

    default_bucket = str(data.get("default_bucket", "25"))
    if default_bucket not in FORECAST_BUCKETS:
        raise ValueError(f"{path.name}: invalid default_bucket {default_bucket!r}")

    return PipelineConfig(
        manual=_parse_pipeline(path, "manual", billing.get("manual")),
        automated=_parse_pipeline(path, "automated", billing.get("automated")),
        deal_stage_buckets={str(k): str(v) for k, v in buckets_raw.items()},
        default_bucket=default_bucket,
    )


@lru_cache
def load_pipeline_config() -> PipelineConfig:
    """Load the pipeline configuration (PIPELINES_FILE override or bundled file)."""
    override = get_settings().pipelines_file
    path = Path(override) if override else DEFAULT_PIPELINES_FILE
    return parse_pipeline_config(path)
