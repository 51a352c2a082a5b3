"""Schema package exports."""

from autorun.schema.jobs import ApprovalCheckpoint, ChunkJob, PipelineItem, PipelineJob, PipelineJobEvent

__all__ = ["ApprovalCheckpoint", "ChunkJob", "PipelineItem", "PipelineJob", "PipelineJobEvent"]
