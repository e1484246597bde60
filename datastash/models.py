"""
Data models for recipes, runs and their execution logs.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

RUN_TYPE = 'run'

# Run states
QUEUED = 'queued'
RUNNING = 'running'
SUCCESS = 'success'
FAILURE = 'failure'
SYSTEM_ERROR = 'system-error'

TERMINAL_STATES = (SUCCESS, FAILURE, SYSTEM_ERROR)

# Initiators
MANUAL = 'manual'
SCHEDULED = 'scheduled'

INITIATORS = (MANUAL, SCHEDULED)

# Trigger conditions
CONDITIONS = ('changed', 'added', 'removed', 'always')


def timestamp(moment: Optional[datetime] = None) -> str:
    """Fixed-width UTC ISO timestamp; sorts chronologically as text."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')


@dataclass
class Trigger:
    """A notification recipient and the condition that fires it."""
    recipient: str
    condition: str = 'changed'

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Trigger':
        return cls(
            recipient=data['recipient'],
            condition=data.get('condition') or 'changed'
        )


@dataclass
class Recipe:
    """
    The work a stash performs.

    setup commands run once to prepare the working directory; run commands
    execute on every run and must leave the tabular result at `result`.
    """
    name: str
    run: List[str]
    result: str
    setup: List[str] = field(default_factory=list)
    schedule: Optional[str] = None  # cron expression, None or '' = manual only
    triggers: List[Trigger] = field(default_factory=list)
    revision: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Recipe':
        return cls(
            name=data.get('name', ''),
            setup=list(data.get('setup') or []),
            run=list(data.get('run') or []),
            result=data.get('result', ''),
            schedule=data.get('schedule') or None,
            triggers=[Trigger.from_dict(t) for t in data.get('triggers') or []],
            revision=data.get('revision')
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop('revision')
        return data

    def validate(self) -> List[str]:
        """
        Validate the recipe.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.name or not self.name.strip():
            errors.append("'name' cannot be empty")
        if not self.run:
            errors.append("'run' needs at least one command")
        for i, command in enumerate(self.setup + self.run):
            if not isinstance(command, str) or not command.strip():
                errors.append(f"command {i} must be a non-empty string")
        if not self.result or not self.result.strip():
            errors.append("'result' must name the file the run commands produce")
        for trigger in self.triggers:
            if not trigger.recipient:
                errors.append("trigger 'recipient' cannot be empty")
            if trigger.condition not in CONDITIONS:
                errors.append(
                    f"trigger condition '{trigger.condition}' must be one of {', '.join(CONDITIONS)}"
                )

        return errors


@dataclass
class LogEntry:
    """A chunk of output from one stream of a command."""
    stream: str  # 'stdout' or 'stderr'
    data: str


@dataclass
class CommandResult:
    """Outcome of a single pipeline command."""
    command: str
    exit_code: int
    log: List[LogEntry] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.exit_code != 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CommandResult':
        return cls(
            command=data['command'],
            exit_code=data['exit_code'],
            log=[LogEntry(**entry) for entry in data.get('log', [])]
        )


@dataclass
class Diff:
    """Rows added and removed between two snapshots."""
    added: List[Dict[str, Any]] = field(default_factory=list)
    removed: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.added and not self.removed


@dataclass
class Run:
    """
    One execution attempt of a recipe.

    Terminal runs (success, failure, system-error) are history and are
    never written again except to be deleted by retention.
    """
    id: str
    state: str
    initiator: str
    date_queued: str
    date_started: Optional[str] = None
    duration: Optional[float] = None  # seconds
    execution: List[CommandResult] = field(default_factory=list)
    records_added: Optional[int] = None
    records_removed: Optional[int] = None
    triggered: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    revision: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Run':
        return cls(
            id=data['id'],
            state=data['state'],
            initiator=data['initiator'],
            date_queued=data['date_queued'],
            date_started=data.get('date_started'),
            duration=data.get('duration'),
            execution=[CommandResult.from_dict(c) for c in data.get('execution') or []],
            records_added=data.get('records_added'),
            records_removed=data.get('records_removed'),
            triggered=list(data.get('triggered') or []),
            error=data.get('error'),
            revision=data.get('revision')
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop('id')
        data.pop('revision')
        return data
