"""Azure CLI Extension: az mate, deployment execution engine for generated scripts."""

try:
    from azure.cli.core import AzCommandsLoader
except ImportError:
    # Azure CLI not installed; allow the engine packages to be imported
    # standalone without the full CLI runtime.
    AzCommandsLoader = None  # type: ignore[assignment,misc]

if AzCommandsLoader is not None:
    from azext_mate._help import helps  # type: ignore[attr-defined]  # noqa: F401

    class MateCommandsLoader(AzCommandsLoader):
        """Command loader for az mate extension."""

        def __init__(self, cli_ctx=None):
            from azure.cli.core.commands import CliCommandType

            mate_custom = CliCommandType(operations_tmpl="azext_mate.custom#{}")
            super().__init__(cli_ctx=cli_ctx, custom_command_type=mate_custom)

        def load_command_table(self, args):
            from azext_mate.commands import load_command_table

            load_command_table(self, args)
            return self.command_table

        def load_arguments(self, command):
            from azext_mate._params import load_arguments

            load_arguments(self, command)

    COMMAND_LOADER_CLS = MateCommandsLoader
