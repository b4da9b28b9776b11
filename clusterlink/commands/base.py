"""
Base command handler with decorator-based registration.

Provides infrastructure for self-documenting console commands with
automatic help text generation and tab completion support.
"""

from typing import Callable, List, Optional, Dict, Any
import inspect


def command(*names, help_text: str = "", usage: str = "", category: str = "general"):
    """
    Decorator to register command handler methods.

    Args:
        *names: Command names/aliases (e.g., "CONNECT", "C")
        help_text: Short help description (or use function docstring)
        usage: Usage syntax (e.g., "CONNECT <cluster>")
        category: Command category for grouping in help

    Example:
        @command("CONNECT", "C", usage="CONNECT <cluster>", category="cluster")
        async def cmd_connect(self, args):
            '''Connect to a cluster and make it active'''
    """
    def decorator(func: Callable) -> Callable:
        help_desc = help_text or (func.__doc__.strip() if func.__doc__ else "")

        func._command_names = [n.upper() for n in names]
        func._command_help = help_desc
        func._command_usage = usage
        func._command_category = category
        func._is_command = True

        return func
    return decorator


class CommandHandler:
    """
    Base class for command handlers with automatic registration.

    Commands are registered via the @command decorator. The handler builds
    a dispatch table and provides introspection for help and completion.
    """

    def __init__(self):
        self.commands: Dict[str, Dict[str, Any]] = {}
        self._register_commands()

    def _register_commands(self):
        """Scan class methods and register decorated commands."""
        for name in dir(type(self)):
            if name.startswith('_'):
                continue

            method = getattr(self, name)
            if not callable(method) or not hasattr(method, '_is_command'):
                continue

            for cmd_name in method._command_names:
                self.commands[cmd_name] = {
                    'handler': method,
                    'help': method._command_help,
                    'usage': method._command_usage,
                    'category': method._command_category,
                    'method_name': name
                }

    async def dispatch(self, cmd: str, args: List[str]) -> bool:
        """
        Dispatch command to registered handler.

        Returns:
            True if command was found and executed, False otherwise
        """
        entry = self.commands.get(cmd.upper())
        if entry is None:
            return False

        handler = entry['handler']
        if inspect.iscoroutinefunction(handler):
            await handler(args)
        else:
            handler(args)

        return True

    def get_command_names(self) -> List[str]:
        """Get list of all registered command names."""
        return sorted(self.commands.keys())

    def _aliases(self, method_name: str) -> List[str]:
        return [n for n, i in self.commands.items() if i['method_name'] == method_name]

    def get_commands_by_category(self) -> Dict[str, List[str]]:
        """Group commands by category for help display."""
        categories: Dict[str, List[str]] = {}
        seen_methods = set()

        for cmd_name, cmd_info in sorted(self.commands.items()):
            method_name = cmd_info['method_name']
            if method_name in seen_methods:
                continue

            aliases = self._aliases(method_name)
            # Longest name first so "DISCONNECT (D)" rather than "D (DISCONNECT)"
            aliases.sort(key=len, reverse=True)
            display = aliases[0]
            if len(aliases) > 1:
                display = f"{aliases[0]} ({', '.join(aliases[1:])})"

            categories.setdefault(cmd_info['category'], []).append(display)
            seen_methods.add(method_name)

        return categories

    def get_help(self, cmd: Optional[str] = None) -> str:
        """Help text for one command, or every command grouped by category."""
        if cmd:
            info = self.commands.get(cmd.upper())
            if info is None:
                return f"Unknown command: {cmd}"

            help_lines = [f"Command: {', '.join(self._aliases(info['method_name']))}"]
            if info['help']:
                help_lines.append(f"Description: {info['help']}")
            if info['usage']:
                help_lines.append(f"Usage: {info['usage']}")
            return '\n'.join(help_lines)

        help_lines = []
        for category, commands in sorted(self.get_commands_by_category().items()):
            help_lines.append(f"\n{category.upper()} Commands:")
            for cmd_display in commands:
                primary = cmd_display.split()[0]
                help_lines.append(f"  {cmd_display:20s} {self.commands[primary]['help']}")

        return '\n'.join(help_lines)

    def get_completions(self, text: str) -> List[str]:
        """Command names starting with ``text`` (case-insensitive)."""
        text_upper = text.upper()
        return [cmd for cmd in self.commands.keys() if cmd.startswith(text_upper)]
