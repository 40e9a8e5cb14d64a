"""Command table registration for az mate."""


def load_command_table(self, _):
    """Register all mate commands."""

    with self.command_group("mate deploy", is_preview=True) as g:
        g.custom_command("run", "mate_deploy_run")
        g.custom_command("list", "mate_deploy_list")
        g.custom_command("show", "mate_deploy_show")
        g.custom_command("check", "mate_deploy_check")
        g.custom_command("install-module", "mate_deploy_install_module")
        g.custom_command("open-shell", "mate_deploy_open_shell")

    with self.command_group("mate cloudshell", is_preview=True) as g:
        g.custom_command("status", "mate_cloudshell_status")

    with self.command_group("mate config", is_preview=True) as g:
        g.custom_command("init", "mate_config_init")
        g.custom_command("show", "mate_config_show")
        g.custom_command("get", "mate_config_get")
        g.custom_command("set", "mate_config_set")
