"""Trigger grammar.

A flow's triggers are stored as canonical strings of the form ``type|arg|``:

    once|<delay ms>|           fire once, delay ms after arming
    crontab|<5-field cron>|    fire on every cron tick
    event.once|<event id>|     fire on the next matching external event
    event.every|<event id>|    fire on every matching external event

``parse_trigger`` turns such a string into one of the variant classes below and
``format_trigger`` turns a variant back into its canonical string. The parser
is purely syntactic: cron expressions are checked for validity but never
evaluated against a clock here.
"""
import re
from dataclasses import dataclass
from typing import Iterable, List, Union
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from taskflow_engine.services.exceptions import InvalidTriggerFormat

ONCE = "once"
CRONTAB = "crontab"
EVENT_ONCE = "event.once"
EVENT_EVERY = "event.every"

DEFAULT_TRIGGER = "once|0|"


@dataclass(frozen=True)
class Once:
    delay_ms: int
    kind = ONCE

    @property
    def argument(self) -> str:
        return str(self.delay_ms)


@dataclass(frozen=True)
class Crontab:
    expression: str
    kind = CRONTAB

    @property
    def argument(self) -> str:
        return self.expression


@dataclass(frozen=True)
class EventOnce:
    event_id: str
    kind = EVENT_ONCE

    @property
    def argument(self) -> str:
        return self.event_id


@dataclass(frozen=True)
class EventEvery:
    event_id: str
    kind = EVENT_EVERY

    @property
    def argument(self) -> str:
        return self.event_id


Trigger = Union[Once, Crontab, EventOnce, EventEvery]

# Standard cron numbers days from Sunday (0 and 7); APScheduler 3 numbers from Monday.
_DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def _day_name(day: int) -> str:
    if not 0 <= day < len(_DAY_NAMES):
        raise ValueError(f"day of week {day} out of range 0-7")
    return _DAY_NAMES[day]


def _day_of_week_names(field: str) -> str:
    if not re.search(r"\d", field):
        return field

    names = []
    for part in field.split(","):
        value, _, step = part.partition("/")
        stride = int(step) if step else 1
        if value == "*":
            if not step:
                return "*"
            days = range(0, 7, stride)
        elif re.fullmatch(r"\d+-\d+", value):
            start, end = (int(bound) for bound in value.split("-"))
            days = range(start, end + 1, stride)
        elif value.isdigit():
            days = range(int(value), 7, stride) if step else [int(value)]
        else:
            names.append(part)
            continue
        names.extend(_day_name(day) for day in days)
    if not names:
        raise ValueError(f"day of week field '{field}' matches no days")
    return ",".join(dict.fromkeys(names))


def build_cron_trigger(expression: str, timezone: str) -> BaseTrigger:
    """APScheduler trigger for a standard 5-field cron expression.

    When both day of month and day of week are restricted, a tick fires on
    days matching either one, as in standard cron.
    """
    minute, hour, day, month, weekdays = expression.split()
    day_of_week = _day_of_week_names(weekdays)
    if day.startswith("*") or weekdays.startswith("*"):
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            timezone=timezone,
        )
    return OrTrigger([
        CronTrigger(minute=minute, hour=hour, day=day, month=month, timezone=timezone),
        CronTrigger(minute=minute, hour=hour, month=month, day_of_week=day_of_week, timezone=timezone),
    ])


def _parse_delay(raw: str, text: str) -> Once:
    if not (raw.isascii() and raw.isdigit()):
        raise InvalidTriggerFormat(text, "delay must be a non-negative integer number of milliseconds")
    return Once(delay_ms=int(raw))


def _parse_crontab(raw: str, text: str) -> Crontab:
    expression = " ".join(raw.split())
    if len(expression.split(" ")) != 5:
        raise InvalidTriggerFormat(text, "cron expression must have exactly 5 fields")
    try:
        build_cron_trigger(expression, "UTC")
    except ValueError as e:
        raise InvalidTriggerFormat(text, f"invalid cron expression: {e}")
    return Crontab(expression=expression)


def _parse_event_id(raw: str, text: str) -> str:
    event_id = raw.strip()
    if not event_id:
        raise InvalidTriggerFormat(text, "event id must not be empty")
    return event_id


def parse_trigger(text: str) -> Trigger:
    """Parse a trigger string into its typed variant.

    Raises:
        InvalidTriggerFormat: unknown type prefix or malformed argument.
    """
    if not isinstance(text, str):
        raise InvalidTriggerFormat(repr(text), "trigger must be a string")

    body = text.strip()
    if body.endswith("|"):
        body = body[:-1]

    kind, sep, argument = body.partition("|")
    if not sep:
        raise InvalidTriggerFormat(text, "expected '<type>|<argument>|'")
    if "|" in argument:
        raise InvalidTriggerFormat(text, "argument must not contain '|'")

    if kind == ONCE:
        return _parse_delay(argument.strip(), text)
    if kind == CRONTAB:
        return _parse_crontab(argument, text)
    if kind == EVENT_ONCE:
        return EventOnce(event_id=_parse_event_id(argument, text))
    if kind == EVENT_EVERY:
        return EventEvery(event_id=_parse_event_id(argument, text))

    raise InvalidTriggerFormat(text, f"unknown trigger type '{kind}'")


def format_trigger(trigger: Trigger) -> str:
    """Canonical string for a trigger variant."""
    return f"{trigger.kind}|{trigger.argument}|"


def normalize_trigger(text: str) -> str:
    return format_trigger(parse_trigger(text))


def parse_triggers(texts: Iterable[str]) -> List[Trigger]:
    """Validate a flow's trigger list; at least one trigger is required."""
    triggers = [parse_trigger(text) for text in texts]
    if not triggers:
        raise InvalidTriggerFormat("[]", "a flow needs at least one trigger")
    return triggers


def is_one_shot(trigger: Trigger) -> bool:
    return isinstance(trigger, (Once, EventOnce))
