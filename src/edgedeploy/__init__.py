"""edgedeploy - crash-safe deployment orchestration for serverless edge services."""

__version__ = "0.1.0"
