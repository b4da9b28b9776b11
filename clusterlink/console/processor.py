"""Command processor for the cluster link console."""

from prompt_toolkit import HTML

from clusterlink import constants
from clusterlink.commands.base import CommandHandler, command
from clusterlink.connection import ClusterSendError
from clusterlink.utils import (
    print_error,
    print_header,
    print_info,
    print_pt,
    print_status,
    print_table_row,
    print_warning,
)

COMMAND_PREFIX = "/"


class CommandProcessor(CommandHandler):
    """Slash commands control the link; anything else goes to the cluster."""

    def __init__(self, manager, relay=None, config=None):
        self.manager = manager
        self.relay = relay
        self.config = config if config is not None else manager.config
        self.running = True
        super().__init__()

    async def process(self, line):
        """Handle one line of console input."""
        if not line.startswith(COMMAND_PREFIX):
            await self.send_upstream(line)
            return

        parts = line[len(COMMAND_PREFIX):].split()
        if not parts:
            print_warning("Empty command, type /help for a list")
            return

        cmd, args = parts[0], parts[1:]
        if not await self.dispatch(cmd, args):
            print_error(f"Unknown command: /{cmd} (type /help)")

    async def send_upstream(self, line):
        """Forward a raw line to the active cluster, reporting failures."""
        if self.manager.active_cluster is None:
            print_warning("No active cluster - use /connect <name> first")
            return
        try:
            await self.manager.send_raw(line)
        except ClusterSendError as e:
            print_error(f"Send failed: {e}")

    # ------------------------------------------------------------------

    @command("CONNECT", "C", usage="CONNECT <cluster>", category="cluster")
    async def cmd_connect(self, args):
        """Connect to a cluster and make it active"""
        if not args:
            print_error("Usage: /connect <cluster>")
            return

        name = " ".join(args)
        if self.manager.get_definition(name) is None:
            print_error(f"Unknown cluster '{name}'. Known: {', '.join(self.manager.cluster_names)}")
            return

        print_info(f"Connecting to {name}...")
        ok = await self.manager.connect_cluster(
            name, timeout=constants.CONNECT_TIMEOUT, force_login=True
        )
        if not ok:
            print_error(f"Could not connect to {name}")

    @command("DISCONNECT", "D", usage="DISCONNECT [cluster|ALL]", category="cluster")
    def cmd_disconnect(self, args):
        """Disconnect the active cluster, a named one, or all"""
        if args and args[0].upper() == "ALL":
            self.manager.disconnect()
            return

        name = " ".join(args) if args else self.manager.active_cluster
        if name is None:
            print_warning("No active cluster")
            return
        self.manager.disconnect(name)

    @command("CLUSTERS", "LIST", category="cluster")
    def cmd_clusters(self, args):
        """List configured clusters and their state"""
        print_header("Clusters")
        widths = [20, 28, 10, 8]
        print_table_row(["NAME", "ENDPOINT", "STATE", "IDLE"], widths, header=True)
        for status in self.manager.status():
            if status.reconnecting:
                state = "RETRYING"
            elif status.connected:
                state = "UP"
            elif status.suppressed:
                state = "FAULTED"
            else:
                state = "DOWN"
            marker = "*" if status.active else " "
            print_table_row(
                [
                    f"{marker}{status.name}",
                    f"{status.host}:{status.port}",
                    state,
                    f"{int(status.idle_seconds)}s",
                ],
                widths,
            )
        print_pt("")

    @command("STATUS", category="cluster")
    def cmd_status(self, args):
        """Show the active cluster and relay status"""
        active = self.manager.active_cluster
        print_status(f"Active cluster: {active or '(none)'}")
        if self.relay is not None and self.relay.is_running:
            print_status(f"Relay: {self.relay.host}:{self.relay.bound_port} ({self.relay.client_count} clients)")
        else:
            print_status("Relay: disabled")

    @command("RELAY", category="relay")
    def cmd_relay(self, args):
        """Show local relay server clients"""
        if self.relay is None or not self.relay.is_running:
            print_status("Relay server is not running")
            return
        print_status(f"Relay listening on {self.relay.host}:{self.relay.bound_port}")
        print_status(f"Connected clients: {self.relay.client_count}")

    @command("CONFIG", category="general")
    def cmd_config(self, args):
        """Show the loaded configuration"""
        self.config.display()

    @command("DEBUG", usage="DEBUG [0-6]", category="general")
    def cmd_debug(self, args):
        """Show or set the debug level"""
        if not args:
            print_status(f"Debug level: {constants.DEBUG_LEVEL}")
            return
        try:
            level = int(args[0])
        except ValueError:
            print_error(f"Invalid debug level '{args[0]}'")
            return
        if not 0 <= level <= 6:
            print_error("Debug level must be 0-6")
            return
        constants.DEBUG_LEVEL = level
        print_status(f"Debug level set to {level}")

    @command("HELP", "?", usage="HELP [command]", category="general")
    def cmd_help(self, args):
        """Show available commands"""
        if args:
            print_pt(self.get_help(args[0].lstrip(COMMAND_PREFIX)))
            return
        print_header("Available Commands")
        print_pt(HTML("<gray>Commands start with '/'. Any other input is sent to the active cluster.</gray>"))
        print_pt(self.get_help())
        print_pt("")

    @command("QUIT", "EXIT", "Q", category="general")
    def cmd_quit(self, args):
        """Quit the application"""
        print_info("Exiting...")
        self.running = False
