"""Event loop for the interactive session.

One queue feeds the state machine. Background tasks (registry and disk
reads, project creation) run on a thread pool and post `Loaded` or
`LoadFailed` back into that queue; keys come from a reader thread or, in
tests, from a script.
"""

from __future__ import annotations

import logging
import os
import queue
import select
import sys
import threading
import webbrowser
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, TextIO

from ..context import ProjectContext
from ..errors import ApplyError, BatteryPackError
from ..sources import PackSource
from ..templates import TemplateChoice, materialize_template, resolve_template
from . import events as ev
from .render import render
from .screens import (
    AddPayload,
    AddTarget,
    BrowseTarget,
    CreateTarget,
    DetailTarget,
    ExpandTarget,
    ListTarget,
    Loading,
    Target,
    pack_rows,
)
from .session import Session


logger = logging.getLogger(__name__)

CTRL_C = "ctrl-c"


class Loaders:
    """Computes the payload for each loading target."""

    def __init__(self, source: PackSource, session: Session, *, cwd: Path | None = None) -> None:
        self.source = source
        self.session = session
        self.cwd = cwd or Path.cwd()

    def _present(self) -> dict:
        model = self.session.model
        out = {}
        for name in model.user_dep_versions():
            found = model.find_dependency(name)
            if found:
                out[name] = found[0].kind
        return out

    def _rows(self, name: str):
        model = self.session.model
        loaded = self.source.load(name)
        reg = model.get_registration(name)
        installed = reg is not None or name in model.installed_packs()
        return pack_rows(
            loaded.spec,
            active=(reg.features if reg is not None else model.active_features(name)) if installed else None,
            present=self._present(),
            registered_version=reg.version if reg is not None else None,
        )

    def load(self, target: Target) -> Any:
        if isinstance(target, (ListTarget, BrowseTarget)):
            return self.source.list_packs(target.filter)
        if isinstance(target, DetailTarget):
            return self.source.detail(target.name)
        if isinstance(target, AddTarget):
            packs = tuple(self._rows(n) for n in self.session.model.installed_packs())
            focus = self._rows(target.focus) if target.focus else None
            return AddPayload(packs=packs, focus=focus)
        if isinstance(target, ExpandTarget):
            return self._rows(target.name)
        if isinstance(target, CreateTarget):
            return self._create(target)
        raise TypeError(f"unknown target: {target!r}")

    def _create(self, target: CreateTarget) -> Path:
        loaded = self.source.load(target.pack)
        if loaded.root is None:
            raise ApplyError(message=f"{target.pack} has no local copy to generate from")
        chosen = resolve_template(loaded.spec.templates, target.template)
        if isinstance(chosen, TemplateChoice):
            raise ApplyError(message="choose a template: " + ", ".join(chosen.options))
        _, tmpl = chosen
        dest = (self.cwd / target.directory / target.name).resolve()
        return materialize_template(loaded.root, tmpl.path, dest, target.name)


# ----------------------------------------------------------------------
# Terminal input
# ----------------------------------------------------------------------

_ESCAPES = {
    "[A": ev.UP,
    "[B": ev.DOWN,
    "[C": ev.RIGHT,
    "[D": ev.LEFT,
    "[H": ev.HOME,
    "[F": ev.END,
    "[1~": ev.HOME,
    "[4~": ev.END,
    "[3~": ev.DELETE,
    "[Z": ev.BACKTAB,
    "OH": ev.HOME,
    "OF": ev.END,
}

_CONTROL = {
    "\r": ev.ENTER,
    "\n": ev.ENTER,
    "\t": ev.TAB,
    "\x7f": ev.BACKSPACE,
    "\x08": ev.BACKSPACE,
    "\x03": CTRL_C,
}


def _read_char(fd: int, timeout: float | None = None) -> str | None:
    if timeout is not None:
        ready, _, _ = select.select([fd], [], [], timeout)
        if not ready:
            return None
    data = os.read(fd, 1)
    return data.decode("utf-8", errors="replace") if data else None


def read_key(fd: int) -> str | None:
    """Read one key press from a terminal in cbreak mode."""

    ch = _read_char(fd)
    if ch is None:
        return None
    if ch in _CONTROL:
        return _CONTROL[ch]
    if ch != "\x1b":
        return ch
    seq = ""
    while len(seq) < 3:
        nxt = _read_char(fd, 0.05)
        if nxt is None:
            break
        seq += nxt
        if seq in _ESCAPES:
            return _ESCAPES[seq]
        if nxt.isalpha() or nxt == "~":
            break
    return ev.ESC if not seq else _ESCAPES.get(seq, ev.ESC)


def _key_thread(events: queue.Queue, stop: threading.Event, fd: int) -> None:
    while not stop.is_set():
        key = read_key(fd)
        if key is None:
            events.put(ev.Key(CTRL_C))
            return
        events.put(ev.Key(key))


# ----------------------------------------------------------------------
# Loop
# ----------------------------------------------------------------------


class Runner:
    def __init__(
        self,
        session: Session,
        loader: Callable[[Target], Any],
        *,
        out: TextIO | None = None,
        max_workers: int = 4,
        open_url: Callable[[str], Any] = webbrowser.open,
    ) -> None:
        self.session = session
        self.loader = loader
        self.out = out
        self.open_url = open_url
        self.events: queue.Queue = queue.Queue()
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="batterypack")
        self._pending = 0
        self._lock = threading.Lock()

    def _done(self, target: Target, fut: Future) -> None:
        event: ev.Event
        try:
            event = ev.Loaded(target=target, payload=fut.result())
        except BatteryPackError as e:
            event = ev.LoadFailed(target=target, message=str(e), retryable=not isinstance(e, ApplyError))
        except Exception as e:  # noqa: BLE001
            logger.exception("background task for %r failed", target)
            event = ev.LoadFailed(target=target, message=str(e) or type(e).__name__)
        # Queue and count change together so `_idle` never sees one without the other.
        with self._lock:
            self.events.put(event)
            self._pending -= 1

    def submit(self, target: Target) -> None:
        with self._lock:
            self._pending += 1
        fut = self.executor.submit(self.loader, target)
        fut.add_done_callback(lambda f: self._done(target, f))

    def perform(self, effect: ev.Effect | None) -> None:
        if effect is None:
            return
        if isinstance(effect, ev.Fetch):
            self.submit(effect.target)
        elif isinstance(effect, ev.NewProject):
            self.submit(effect.target)
        elif isinstance(effect, ev.OpenUrl):
            logger.info("opening %s", effect.url)
            self.open_url(effect.url)
        # Commit is handled by Session.dispatch; Quit ends the loop.

    def draw(self) -> None:
        if self.out is None:
            return
        self.out.write("\x1b[H\x1b[2J" + "\r\n".join(render(self.session.screen)) + "\r\n")
        self.out.flush()

    def _idle(self) -> bool:
        with self._lock:
            return self._pending == 0 and self.events.empty()

    def run(self, keys: Iterable[str] | None = None) -> Session:
        """Drive the session until it reaches a terminal screen.

        With `keys`, each scripted key is posted only once every background
        task has reported back, so runs are deterministic.
        """

        script: Iterator[str] | None = iter(keys) if keys is not None else None
        try:
            self.perform(self.session.start())
            while not self.session.done:
                self.draw()
                if script is not None and self._idle():
                    nxt = next(script, None)
                    if nxt is None:
                        break
                    self.events.put(ev.Key(nxt))
                event = self.events.get()
                if isinstance(event, ev.Key) and event.name == CTRL_C:
                    break
                effect = self.session.dispatch(event)
                if isinstance(effect, ev.Quit):
                    break
                self.perform(effect)
            self.draw()
        finally:
            self.executor.shutdown(wait=False, cancel_futures=True)
        return self.session


def run_interactive(context: ProjectContext, source: PackSource, *, start: Target | None = None) -> int:
    """Run the session on the controlling terminal and save a commit.

    `start` picks the first screen to load; the pack list by default.
    """

    import termios
    import tty

    model = context.load()
    session = Session(model, screen=Loading(start) if start is not None else None, use_workspace=context.in_workspace)
    runner = Runner(session, Loaders(source, session, cwd=context.root).load, out=sys.stdout)

    fd = sys.stdin.fileno()
    saved = termios.tcgetattr(fd)
    stop = threading.Event()
    tty.setcbreak(fd)
    sys.stdout.write("\x1b[?1049h\x1b[?25l")
    try:
        threading.Thread(target=_key_thread, args=(runner.events, stop, fd), daemon=True).start()
        runner.run()
    finally:
        stop.set()
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)
        sys.stdout.write("\x1b[?25h\x1b[?1049l")
        sys.stdout.flush()

    if session.committed is not None:
        for path in context.save(session.model):
            print(f"updated {path}")
        for line in session.committed.describe():
            print(f"  {line}")
    return 0
