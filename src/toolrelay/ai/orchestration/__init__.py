"""Tool-call protocol layer: extraction, validation, repair and history.

Import from the submodules directly (``toolrelay.ai.orchestration.pipeline``
and friends); the package itself re-exports nothing so that the tool
registry can depend on :mod:`.types` without importing the pipeline.
"""
