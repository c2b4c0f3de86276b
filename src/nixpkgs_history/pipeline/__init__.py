"""Extraction pipeline: bounded resolver fan-out into a single locked sink."""

from nixpkgs_history.pipeline.extraction import ExtractionPipeline, PipelineAbortedError
from nixpkgs_history.pipeline.sinks import JsonLinesSink, PackageSink, StoreSink

__all__ = [
    "ExtractionPipeline",
    "JsonLinesSink",
    "PackageSink",
    "PipelineAbortedError",
    "StoreSink",
]
