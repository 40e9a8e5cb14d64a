"""CLI parameter definitions for az mate."""

from azure.cli.core.commands.parameters import get_enum_type

from azext_mate.deploy.models import BackendKind

_BACKENDS = [kind.value for kind in BackendKind]


def load_arguments(self, _):
    """Register CLI parameters for all commands."""

    # --- az mate deploy run ---
    with self.argument_context("mate deploy run") as c:
        c.argument(
            "script_file",
            options_list=["--script-file", "-f"],
            help="Path to the PowerShell script to execute.",
        )
        c.argument(
            "backend",
            arg_type=get_enum_type(_BACKENDS),
            help="Where to run the script. Defaults to deploy.backend from mate.yaml.",
        )
        c.argument("tenant", help="Microsoft Entra tenant ID to authenticate against.")
        c.argument(
            "access_token",
            options_list=["--access-token"],
            help="Use this ARM bearer token instead of acquiring one through the Azure CLI.",
        )
        c.argument(
            "cost_file",
            options_list=["--cost-file"],
            help="JSON or YAML cost estimate to attach to the session record.",
        )
        c.argument(
            "variables",
            nargs="+",
            help="Template variables used to render the script, as KEY=VALUE pairs (recorded only).",
        )

    # --- az mate deploy show ---
    with self.argument_context("mate deploy show") as c:
        c.argument("session_id", options_list=["--id"], help="Session ID (or a unique prefix).")
        c.argument(
            "show_logs",
            options_list=["--logs"],
            help="Render the recorded log stream.",
            action="store_true",
            default=False,
        )

    # --- az mate deploy open-shell ---
    with self.argument_context("mate deploy open-shell") as c:
        c.argument(
            "script_file",
            options_list=["--script-file", "-f"],
            help="Script to print for copy/paste into Cloud Shell.",
        )
        c.argument(
            "no_browser",
            options_list=["--no-browser"],
            help="Print the Cloud Shell URL instead of opening a browser.",
            action="store_true",
            default=False,
        )

    # --- az mate cloudshell status ---
    with self.argument_context("mate cloudshell status") as c:
        c.argument("tenant", help="Microsoft Entra tenant ID to authenticate against.")

    # --- az mate config ---
    with self.argument_context("mate config init") as c:
        c.argument(
            "backend",
            arg_type=get_enum_type(_BACKENDS),
            help="Default execution backend.",
            default="mock",
        )
        c.argument(
            "force",
            help="Overwrite an existing mate.yaml.",
            action="store_true",
            default=False,
        )

    with self.argument_context("mate config get") as c:
        c.argument("key", help="Dot-separated configuration key (e.g., cloudshell.socket_timeout).")

    with self.argument_context("mate config set") as c:
        c.argument("key", help="Dot-separated configuration key (e.g., deploy.backend).")
        c.argument("value", help="Value to set. JSON values (numbers, booleans, lists) are parsed.")
