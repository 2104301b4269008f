"""
Terminal package browser.

A line-oriented list/detail view over the package registry. User input
is parsed into typed intents and dispatched with a match statement;
actions run on a background worker that reports progress and completion
back to the loop as messages, so the screen keeps repainting while a
download is in flight.
"""

from __future__ import annotations

import os
import queue
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Sequence, TextIO, Union

from .installer import InstallManager, InstallResult, InstallStage
from .registry import Package, PackageRegistry

# ANSI color codes
GREEN = "\033[32m"
BOLD = "\033[1m"
YELLOW = "\033[33m"
RED = "\033[31m"
DIM = "\033[2m"
RESET = "\033[0m"


@dataclass(frozen=True)
class Style:
    """
    Rendering options, passed to every render function.

    Attributes:
        use_color: Emit ANSI colors
        use_emoji: Use emoji status icons instead of ASCII
        palette: ANSI codes by role ("installed", "missing", "header", "error", "dim")
    """
    use_color: bool = True
    use_emoji: bool = True
    palette: dict[str, str] = field(default_factory=lambda: {
        "installed": GREEN,
        "missing": RED,
        "header": BOLD,
        "error": RED,
        "progress": YELLOW,
        "dim": DIM,
    })

    @classmethod
    def from_env(cls, stream: TextIO | None = None) -> Style:
        """Style for a stream, honouring GRUNDLE_COLOR and GRUNDLE_EMOJI."""
        stream = stream or sys.stdout
        is_tty = hasattr(stream, "isatty") and stream.isatty()
        return cls(
            use_color=is_tty and os.environ.get("GRUNDLE_COLOR", "1") == "1",
            use_emoji=os.environ.get("GRUNDLE_EMOJI", "1") == "1",
        )


PLAIN = Style(use_color=False, use_emoji=False)


def colorize(text: str, role: str, style: Style) -> str:
    """Apply the palette color for role, or return text unchanged."""
    if not style.use_color or not text:
        return text
    color = style.palette.get(role, "")
    return f"{color}{text}{RESET}" if color else text


def status_icon(package: Package, style: Style) -> str:
    if style.use_emoji:
        return "✅" if package.installed else "❌"
    return "*" if package.installed else "-"


# -- list items and intents ------------------------------------------------

@dataclass(frozen=True)
class PackageItem:
    package: Package


@dataclass(frozen=True)
class QuitItem:
    pass


ListItem = Union[PackageItem, QuitItem]


@dataclass(frozen=True)
class Select:
    name: str


@dataclass(frozen=True)
class Install:
    name: str


@dataclass(frozen=True)
class Upgrade:
    name: str


@dataclass(frozen=True)
class Remove:
    name: str


@dataclass(frozen=True)
class Rollback:
    name: str


@dataclass(frozen=True)
class Back:
    pass


@dataclass(frozen=True)
class Refresh:
    pass


@dataclass(frozen=True)
class Quit:
    pass


@dataclass(frozen=True)
class Invalid:
    message: str


Intent = Union[Select, Install, Upgrade, Remove, Rollback, Back, Refresh, Quit, Invalid]

ACTIONS: dict[str, type] = {
    "i": Install, "install": Install,
    "u": Upgrade, "upgrade": Upgrade,
    "r": Remove, "rm": Remove, "remove": Remove,
    "rb": Rollback, "rollback": Rollback,
}


# -- worker messages -------------------------------------------------------

@dataclass(frozen=True)
class Progress:
    name: str
    stage: InstallStage


@dataclass(frozen=True)
class Completed:
    result: InstallResult


@dataclass(frozen=True)
class Crashed:
    name: str
    error: str


Message = Union[Progress, Completed, Crashed]


def build_items(packages: Sequence[Package]) -> list[ListItem]:
    items: list[ListItem] = [PackageItem(p) for p in packages]
    items.append(QuitItem())
    return items


def _item_intent(item: ListItem) -> Intent:
    match item:
        case PackageItem(package=package):
            return Select(package.name)
        case QuitItem():
            return Quit()
    raise TypeError(f"Unhandled list item: {item!r}")


def _target(arg: str, items: Sequence[ListItem]) -> str | None:
    if arg.isdigit():
        index = int(arg) - 1
        if 0 <= index < len(items):
            match items[index]:
                case PackageItem(package=package):
                    return package.name
                case QuitItem():
                    return None
        return None
    return arg


def parse_command(line: str, items: Sequence[ListItem], selected: str | None = None) -> Intent:
    """
    Turn one line of input into an intent.

    Accepted forms: a list number, "q", "b", an action ("i", "u", "r",
    "rb" or their long names) optionally followed by a package name or
    list number; without an argument the action targets the selected
    package. An empty line refreshes.

    Args:
        line: Raw input
        items: Items currently on screen
        selected: Package shown in the detail view, if any

    Returns:
        Parsed intent
    """
    words = line.strip().split()
    if not words:
        return Refresh()

    command, args = words[0].lower(), words[1:]
    if command in ("q", "quit", "exit"):
        return Quit()
    if command in ("b", "back"):
        return Back()
    if command.isdigit() and not args:
        index = int(command) - 1
        if 0 <= index < len(items):
            return _item_intent(items[index])
        return Invalid(f"No entry numbered {command}")

    action = ACTIONS.get(command)
    if action is None:
        return Invalid(f"Unknown command: {command}")
    if len(args) > 1:
        return Invalid(f"{command} takes one package")

    name = _target(args[0], items) if args else selected
    if not name:
        return Invalid(f"{command}: which package?")
    return action(name)


# -- rendering -------------------------------------------------------------

def render_package_list(items: Sequence[ListItem], style: Style) -> str:
    """Numbered package table followed by a quit entry."""
    packages = [item.package for item in items if isinstance(item, PackageItem)]
    name_width = max([len(p.name) for p in packages] + [len("package")])
    version_width = max([len(p.installed_version or "") for p in packages] + [len("installed")])

    header = f"{'#':>3}    {'package':<{name_width}}  {'installed':<{version_width}}  description"
    lines = [colorize(header, "header", style)]
    for number, item in enumerate(items, start=1):
        match item:
            case PackageItem(package=package):
                version = package.installed_version or ""
                row = (
                    f"{number:>3}  {status_icon(package, style)} "
                    f"{package.name:<{name_width}}  {version:<{version_width}}  "
                    f"{package.description}"
                )
                lines.append(colorize(row, "installed" if package.installed else "dim", style))
            case QuitItem():
                lines.append(f"{number:>3}  quit")
    return "\n".join(lines)


def render_package_detail(package: Package, style: Style) -> str:
    lines = [
        colorize(package.name, "header", style),
        f"  repository: {package.repo or '(unknown)'}",
        f"  installed:  {package.installed_version or 'no'}",
    ]
    if package.install_path:
        lines.append(f"  path:       {package.install_path}")
    if package.description:
        lines.append(f"  {package.description}")
    actions = "[i]nstall  [u]pgrade  [r]emove  [rb] rollback  [b]ack  [q]uit"
    lines.append(colorize(actions, "dim", style))
    return "\n".join(lines)


def render_message(message: Message, style: Style) -> str:
    match message:
        case Progress(name=name, stage=stage):
            return colorize(f"  {name}: {stage.value}...", "progress", style)
        case Completed(result=result):
            role = "installed" if result.ok else "error"
            return colorize(result.message(), role, style)
        case Crashed(name=name, error=error):
            return colorize(f"{name}: internal error: {error}", "error", style)
    raise TypeError(f"Unhandled message: {message!r}")


class PackageBrowser:
    """Interactive list/detail loop over the registry."""

    def __init__(
        self,
        manager: InstallManager,
        registry: PackageRegistry | None = None,
        style: Style = PLAIN,
        input_fn: Callable[[str], str] = input,
        output: TextIO | None = None,
    ):
        self.manager = manager
        self.registry = registry or manager.registry
        self.style = style
        self.input_fn = input_fn
        self.output = output or sys.stdout
        self.messages: queue.Queue[Message] = queue.Queue()
        self.selected: str | None = None

    def _print(self, text: str) -> None:
        print(text, file=self.output, flush=True)

    def _perform(self, intent: Intent) -> None:
        def progress(name: str, stage: InstallStage) -> None:
            self.messages.put(Progress(name, stage))

        try:
            match intent:
                case Install(name=name):
                    result = self.manager.install(name, progress=progress)
                case Upgrade(name=name):
                    result = self.manager.upgrade(name, progress=progress)
                case Remove(name=name):
                    result = self.manager.remove(name)
                case Rollback(name=name):
                    result = self.manager.rollback(name)
                case _:
                    raise TypeError(f"Not an action: {intent!r}")
        except Exception as e:
            self.messages.put(Crashed(getattr(intent, "name", "?"), str(e)))
            return
        self.messages.put(Completed(result))

    def _run_action(self, executor: ThreadPoolExecutor, intent: Intent) -> InstallResult | None:
        """Run an action in the background and repaint until it reports back."""
        future = executor.submit(self._perform, intent)
        while True:
            try:
                message = self.messages.get(timeout=0.1)
            except queue.Empty:
                if future.done() and self.messages.empty():
                    # Worker died without reporting; surface its exception
                    future.result()
                    return None
                continue
            self._print(render_message(message, self.style))
            match message:
                case Completed(result=result):
                    return result
                case Crashed():
                    return None
                case Progress():
                    continue

    def render(self) -> list[ListItem]:
        packages = self.registry.list_known_packages()
        items = build_items(packages)
        if self.selected is not None:
            package = next((p for p in packages if p.name == self.selected), None)
            if package is None:
                self.selected = None
            else:
                self._print(render_package_detail(package, self.style))
                return items
        self._print(render_package_list(items, self.style))
        return items

    def run(self) -> int:
        """
        Run the loop until the user quits or input ends.

        Returns:
            Process exit code (always 0; failures are shown, not fatal)
        """
        with ThreadPoolExecutor(max_workers=1) as executor:
            while True:
                items = self.render()
                try:
                    line = self.input_fn("> ")
                except (EOFError, KeyboardInterrupt):
                    self._print("")
                    return 0

                intent = parse_command(line, items, self.selected)
                match intent:
                    case Quit():
                        return 0
                    case Back():
                        self.selected = None
                    case Refresh():
                        pass
                    case Select(name=name):
                        self.selected = name
                    case Install() | Upgrade() | Remove() | Rollback():
                        self._run_action(executor, intent)
                    case Invalid(message=message):
                        self._print(colorize(message, "error", self.style))
