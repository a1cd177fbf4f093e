"""Timing and progress reporting for code generation and library builds.

Every generation or build step reports to a :class:`TimeLogger`: a timed
job is bracketed by a start and a stop event carrying one of the
:data:`EVENT_CATEGORIES`, and free-form progress messages can be recorded
in between. What is printed depends on the logger's verbosity; with
verbosity ``None`` nothing is recorded at all.
"""

import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import attrs


VERBOSITY_LEVELS = (None, "default", "verbose", "debug")

#: Job categories: symbolic work and lowering, writing sources to disk,
#: and running the CUDA compiler.
EVENT_CATEGORIES = ("codegen", "io", "compile")


@attrs.define(frozen=True)
class TimingEvent:
    """One entry of a logger's event history.

    Attributes
    ----------
    name : str
        Job name, e.g. ``'model forward one, indep 3'``.
    event_type : str
        ``'start'``, ``'stop'`` or ``'progress'``.
    timestamp : float
        Value of :func:`time.perf_counter` when the event was recorded.
    metadata : dict
        Category of a start event, message of a progress event, and any
        extra keywords passed by the caller.
    """
    name: str = attrs.field(validator=attrs.validators.instance_of(str))
    event_type: str = attrs.field(
        validator=attrs.validators.in_({"start", "stop", "progress"})
    )
    timestamp: float = attrs.field(
        validator=attrs.validators.instance_of(float)
    )
    metadata: dict = attrs.field(factory=dict)

    @property
    def category(self) -> Optional[str]:
        return self.metadata.get("category")


def _check_verbosity(verbosity):
    if verbosity == "None":
        verbosity = None
    if verbosity not in VERBOSITY_LEVELS:
        raise ValueError(
            f"verbosity must be None, 'default', 'verbose', or 'debug', "
            f"got '{verbosity}'"
        )
    return verbosity


class TimeLogger:
    """Record timed jobs and progress messages of a build session.

    Parameters
    ----------
    verbosity : str or None, default='default'
        ``None`` records nothing. ``'default'`` records silently and
        prints a summary on request. ``'verbose'`` also prints job
        durations and progress messages as they happen, and ``'debug'``
        prints every event.

    Attributes
    ----------
    verbosity : str or None
        Current verbosity level.
    events : list of TimingEvent
        Recorded events in chronological order.
    """

    def __init__(self, verbosity: Optional[str] = "default") -> None:
        self.verbosity = _check_verbosity(verbosity)
        self.events: List[TimingEvent] = []
        self._open_jobs: Dict[str, float] = {}

    def set_verbosity(self, verbosity: Optional[str]) -> None:
        self.verbosity = _check_verbosity(verbosity)

    def _record(self, event_name: str, event_type: str,
                metadata: Dict[str, Any]) -> Optional[TimingEvent]:
        if not event_name:
            raise ValueError("event_name cannot be empty")
        if self.verbosity is None:
            return None
        event = TimingEvent(name=event_name, event_type=event_type,
                            timestamp=time.perf_counter(), metadata=metadata)
        self.events.append(event)
        return event

    def start_event(self, event_name: str, category: str = "codegen",
                    **metadata: Any) -> None:
        """Open the timed job ``event_name``.

        Raises
        ------
        ValueError
            If ``event_name`` is empty or ``category`` is not one of
            :data:`EVENT_CATEGORIES`.
        """
        if category not in EVENT_CATEGORIES:
            raise ValueError(
                f"category must be one of {EVENT_CATEGORIES}, "
                f"got '{category}'"
            )
        event = self._record(event_name, "start",
                             dict(metadata, category=category))
        if event is None:
            return
        self._open_jobs[event_name] = event.timestamp
        if self.verbosity == "debug":
            print(f"[DEBUG] Started: {event_name}")

    def stop_event(self, event_name: str, **metadata: Any) -> Optional[float]:
        """Close the job ``event_name`` and return its duration in seconds.

        ``None`` is returned when nothing is recorded or the job was never
        started.
        """
        event = self._record(event_name, "stop", dict(metadata))
        if event is None:
            return None
        started = self._open_jobs.pop(event_name, None)
        if started is None:
            if self.verbosity == "debug":
                print(f"[DEBUG] Warning: stop_event('{event_name}') "
                      "without matching start")
            return None

        duration = event.timestamp - started
        if self.verbosity == "debug":
            print(f"[DEBUG] Stopped: {event_name} ({duration:.3f}s)")
        elif self.verbosity == "verbose":
            print(f"{event_name}: {duration:.3f}s")
        return duration

    @contextmanager
    def timed(self, event_name: str, category: str = "codegen",
              **metadata: Any) -> Iterator[None]:
        """Time the body of a ``with`` block as job ``event_name``.

        The job is stopped even when the block raises.
        """
        self.start_event(event_name, category=category, **metadata)
        try:
            yield
        finally:
            self.stop_event(event_name)

    def progress(self, event_name: str, message: str,
                 **metadata: Any) -> None:
        """Record ``message`` for job ``event_name``; printed when verbose.
        """
        if self._record(event_name, "progress",
                        dict(metadata, message=message)) is None:
            return
        if self.verbosity == "debug":
            print(f"[DEBUG] Progress: {event_name} - {message}")
        elif self.verbosity == "verbose":
            print(message)

    def get_event_duration(self, event_name: str) -> Optional[float]:
        """Duration of the most recent completed run of ``event_name``."""
        stop = None
        for event in reversed(self.events):
            if event.name != event_name:
                continue
            if event.event_type == "stop" and stop is None:
                stop = event.timestamp
            elif event.event_type == "start" and stop is not None:
                return stop - event.timestamp
        return None

    def get_aggregate_durations(
        self, category: Optional[str] = None
    ) -> Dict[str, float]:
        """Total duration of every completed job, by name.

        Parameters
        ----------
        category : str, optional
            Only count jobs started with this category.
        """
        durations: Dict[str, float] = {}
        started: Dict[str, float] = {}
        for event in self.events:
            if event.event_type == "start":
                if category is None or event.category == category:
                    started[event.name] = event.timestamp
            elif event.event_type == "stop" and event.name in started:
                elapsed = event.timestamp - started.pop(event.name)
                durations[event.name] = (durations.get(event.name, 0.0)
                                         + elapsed)
        return durations

    def print_summary(self) -> None:
        """Print the aggregate durations per category.

        Only the ``'default'`` verbosity prints; the louder levels have
        already reported each job as it stopped.
        """
        if self.verbosity != "default":
            return
        sections = []
        for category in EVENT_CATEGORIES:
            durations = self.get_aggregate_durations(category)
            if not durations:
                continue
            lines = [f"  {category} ({sum(durations.values()):.3f}s)"]
            lines.extend(f"    {name}: {duration:.3f}s"
                         for name, duration in sorted(durations.items()))
            sections.append("\n".join(lines))
        if sections:
            print("\nTiming Summary:\n" + "\n".join(sections))

    def clear(self) -> None:
        """Forget all recorded events and open jobs."""
        self.events.clear()
        self._open_jobs.clear()


default_timelogger = TimeLogger()
