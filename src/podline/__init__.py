from .dsl import step, service, repo, inject, extract, matrix, define, PipelineBuilder, build
from .loader import load_pipeline
from .runner import run, PipelineRunner
from .model import Pipeline, Settings, Repository, Service, FileSpec, Step, defaults

__all__ = [
    "step", "service", "repo", "inject", "extract", "matrix", "define", "PipelineBuilder", "build",
    "load_pipeline", "run", "PipelineRunner",
    "Pipeline", "Settings", "Repository", "Service", "FileSpec", "Step", "defaults",
]
