"""Main application entry point: command_loop, main, run."""

import asyncio
import html
import signal
import traceback

from prompt_toolkit import HTML, PromptSession
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.patch_stdout import patch_stdout

from clusterlink import constants
from clusterlink.config import ClusterConfig
from clusterlink.manager import ClusterManager
from clusterlink.relay import RelayServer, link_relay
from clusterlink.utils import (
    print_cluster,
    print_command,
    print_error,
    print_header,
    print_info,
    print_pt,
    print_status,
    print_warning,
)

from .processor import COMMAND_PREFIX, CommandProcessor


async def command_loop(processor):
    """Command input loop with pinned prompt."""
    words = [COMMAND_PREFIX + name.lower() for name in processor.get_command_names()]
    words += processor.manager.cluster_names
    completer = WordCompleter(words, ignore_case=True, sentence=True)

    session = PromptSession(completer=completer, complete_while_typing=False)

    with patch_stdout():
        while processor.running:
            try:
                active = processor.manager.active_cluster
                if active:
                    prompt_html = f"<b><green>{html.escape(active)}&gt;</green></b> "
                else:
                    prompt_html = "<b><gray>(offline)&gt;</gray></b> "

                line = await session.prompt_async(HTML(prompt_html))

                if line:
                    await processor.process(line)

            except (EOFError, KeyboardInterrupt):
                print_pt("")
                processor.cmd_quit([])
                break
            except Exception as e:
                print_error(f"Input error: {e}")


# === Main Application ===

async def main(config_file=None, auto_connect=None, auto_debug=0,
               relay_port=None, relay_enabled=None):
    if auto_debug:
        constants.DEBUG_LEVEL = auto_debug
        print_info(f"Debug level {auto_debug} enabled at startup")

    print_header(f"Cluster Link v{constants.VERSION}")

    config = ClusterConfig(config_file)
    if relay_port is not None:
        config.set("RELAY_PORT", str(relay_port))
    if relay_enabled is not None:
        config.set("RELAY_ENABLED", "ON" if relay_enabled else "OFF")

    if not config.clusters:
        print_error("No clusters configured")
        return
    if not config.mycall:
        print_warning(f"MYCALL is not set in {config.config_file}; login replay will be skipped")

    manager = ClusterManager(config)
    manager.line_received.subscribe(print_cluster)
    manager.command_sent.subscribe(print_command)
    manager.active_changed.subscribe(
        lambda name: print_status(f"Active cluster: {name or '(none)'}")
    )
    manager.start()

    relay = None
    if config.relay_enabled:
        relay = RelayServer(port=config.relay_port, host=config.relay_host)
        relay.client_count_changed.subscribe(
            lambda count: print_status(f"Relay clients: {count}")
        )
        if await relay.start():
            link_relay(manager, relay)
        else:
            relay = None

    processor = CommandProcessor(manager, relay=relay, config=config)

    try:
        target = auto_connect or config.auto_connect
        if target:
            await processor.cmd_connect([target])

        print_info("Type /help for commands")
        await command_loop(processor)

    except Exception as e:
        print_error(f"{type(e).__name__}: {e}")
        traceback.print_exc()

    finally:
        print_info("Disconnecting...")
        if relay is not None:
            await relay.stop()
        await manager.close()


def run(config_file=None, auto_connect=None, auto_debug=0,
        relay_port=None, relay_enabled=None):
    """Entry point for the console application."""
    def sigterm_handler(signum, frame):
        """Handle SIGTERM by raising SIGINT to interrupt the prompt."""
        signal.raise_signal(signal.SIGINT)

    signal.signal(signal.SIGTERM, sigterm_handler)

    try:
        asyncio.run(
            main(
                config_file=config_file,
                auto_connect=auto_connect,
                auto_debug=auto_debug,
                relay_port=relay_port,
                relay_enabled=relay_enabled,
            )
        )
    except KeyboardInterrupt:
        print_pt(HTML("\n<yellow>Interrupted by user</yellow>"))

    print_pt(HTML("<gray>Goodbye!</gray>"))
