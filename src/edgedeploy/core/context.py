"""Click context object for sharing state across commands."""

from __future__ import annotations

from typing import TYPE_CHECKING

import click

from edgedeploy.config import EdgeDeployConfig, get_default_config
from edgedeploy.core.logging import LogLevel, StructuredLogger, setup_logging
from edgedeploy.core.output import OutputFormat, OutputFormatter

if TYPE_CHECKING:
    from edgedeploy.orchestration.service import DeploymentService


class EdgeDeployContext:
    """Shared context object for edgedeploy commands.

    Passed through Click's context mechanism; gives commands access to the
    configuration, the output formatter and the deployment service.
    """

    def __init__(
        self,
        config: EdgeDeployConfig | None = None,
        output_format: OutputFormat | None = None,
        verbose: int = 0,
        quiet: bool = False,
        color: bool = True,
        service: DeploymentService | None = None,
    ):
        self._config = config or get_default_config()
        self._output_format = output_format or self._config.global_settings.output_format
        self._verbose = verbose
        self._quiet = quiet
        self._color = color

        if verbose >= 2:
            log_level = LogLevel.DEBUG
        elif verbose == 1:
            log_level = LogLevel.INFO
        elif quiet:
            log_level = LogLevel.ERROR
        else:
            log_level = self._config.global_settings.verbosity

        setup_logging(
            log_level,
            rich_output=color,
            json_format=self._config.global_settings.log_format == "json",
        )
        self._logger = StructuredLogger("context")

        self._output = OutputFormatter(
            format=self._output_format,
            color=color,
            quiet=quiet,
        )

        self._service = service

    @property
    def config(self) -> EdgeDeployConfig:
        """Get the loaded configuration."""
        return self._config

    @property
    def output(self) -> OutputFormatter:
        """Get the output formatter."""
        return self._output

    @property
    def output_format(self) -> OutputFormat:
        return self._output_format

    @property
    def verbose(self) -> int:
        return self._verbose

    @property
    def quiet(self) -> bool:
        return self._quiet

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def service(self) -> DeploymentService:
        """Get or create the deployment service."""
        if self._service is None:
            from edgedeploy.orchestration.service import DeploymentService

            self._service = DeploymentService(self._config)
        return self._service


pass_context = click.make_pass_decorator(EdgeDeployContext, ensure=True)
