"""Help text for az mate commands."""

from knack.help_files import helps

helps["mate"] = """
type: group
short-summary: Run generated Azure deployment scripts and follow them live.
long-summary: |
    The az mate extension executes a PowerShell deployment script against one
    of three backends and streams a typed, timestamped log while it runs:

      local       PowerShell 7 on this machine, signed in with your Azure CLI token
      cloudshell  An Azure Cloud Shell terminal, driven over its websocket
      mock        A deterministic simulation with no Azure calls

    Finished sessions are recorded in .mate/state/deployments.yaml.
"""

helps["mate deploy"] = """
type: group
short-summary: Start, inspect and troubleshoot deployment sessions.
"""

helps["mate deploy run"] = """
type: command
short-summary: Execute a deployment script and stream its log.
long-summary: |
    Acquires an ARM access token (for local and cloudshell), then hands the
    script to the selected backend. Output is rendered as it arrives.
    Press Ctrl+C to stop the deployment; the session is then recorded as
    failed with "Deployment stopped by user."

    The target subscription comes from the global --subscription argument or
    deploy.subscription in mate.yaml.
examples:
    - name: Simulate a deployment
      text: az mate deploy run --script-file deploy.ps1 --backend mock
    - name: Run locally against a specific subscription
      text: az mate deploy run -f deploy.ps1 --backend local --subscription 00000000-0000-0000-0000-000000000000
    - name: Run in Cloud Shell with a cost estimate attached
      text: az mate deploy run -f deploy.ps1 --backend cloudshell --cost-file estimate.json
"""

helps["mate deploy list"] = """
type: command
short-summary: List recorded deployment sessions, newest first.
"""

helps["mate deploy show"] = """
type: command
short-summary: Show one recorded deployment session.
examples:
    - name: Show a session with its log
      text: az mate deploy show --id 3f2a9c1b --logs
"""

helps["mate deploy check"] = """
type: command
short-summary: Check for PowerShell and the Az module and recommend a backend.
"""

helps["mate deploy install-module"] = """
type: command
short-summary: Install the Az PowerShell module for the current user.
long-summary: |
    Runs Install-Module -Name Az -Scope CurrentUser. Requires an internet
    connection and may take several minutes.
"""

helps["mate deploy open-shell"] = """
type: command
short-summary: Open Azure Cloud Shell in a browser for a manual run.
long-summary: |
    Fallback when neither local PowerShell nor the Cloud Shell terminal API
    can be used. Prints the script so it can be pasted into the shell.
"""

helps["mate cloudshell"] = """
type: group
short-summary: Inspect Azure Cloud Shell availability.
"""

helps["mate cloudshell status"] = """
type: command
short-summary: Check whether Cloud Shell is available and provisioned for you.
"""

helps["mate config"] = """
type: group
short-summary: Manage mate.yaml project configuration.
"""

helps["mate config init"] = """
type: command
short-summary: Create mate.yaml with default settings.
examples:
    - name: Default to local execution
      text: az mate config init --backend local
"""

helps["mate config show"] = """
type: command
short-summary: Show the effective configuration (secrets masked).
"""

helps["mate config get"] = """
type: command
short-summary: Get a single configuration value.
examples:
    - name: Read the socket timeout
      text: az mate config get --key cloudshell.socket_timeout
"""

helps["mate config set"] = """
type: command
short-summary: Set a configuration value.
long-summary: |
    deploy.subscription and deploy.tenant are written to mate.secrets.yaml,
    which should be git-ignored.
examples:
    - name: Default to Cloud Shell
      text: az mate config set --key deploy.backend --value cloudshell
    - name: Speed up simulations
      text: az mate config set --key mock.time_scale --value 0.1
"""
