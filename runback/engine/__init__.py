"""Session engine: store, context assembly, checkpoints and generation jobs.

Import from the submodules directly (runback.engine.store,
runback.engine.scheduler, ...); providers depend on engine.schemas.
"""
