"""
Typed memory rule payloads.

Rules are stored with free-form JSON ``conditions`` and ``actions`` (camelCase
keys, as submitted by API clients). They are parsed here into one dataclass per
known rule type and one per action, with an explicit fallback for unknown rule
types.
"""

import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, ClassVar, Dict, List, Optional, Union

from ..utils.errors import ValidationError

RULE_TYPES = ('length', 'keyword', 'time')

_INTERVAL_PATTERN = re.compile(r'^(\d+)([smhdw])$')
_INTERVAL_UNITS = {
    's': timedelta(seconds=1),
    'm': timedelta(minutes=1),
    'h': timedelta(hours=1),
    'd': timedelta(days=1),
    'w': timedelta(weeks=1),
}


def parse_interval(interval: str) -> timedelta:
    """Parse ``<integer><unit>`` with unit in s|m|h|d|w.

    Raises:
        ValidationError: If the interval string is malformed
    """
    match = _INTERVAL_PATTERN.match(interval.strip()) if isinstance(interval, str) else None
    if not match:
        raise ValidationError(f'Invalid interval format: {interval!r}')
    amount, unit = match.groups()
    return int(amount) * _INTERVAL_UNITS[unit]


@dataclass
class LengthCondition:
    rule_type: ClassVar[str] = 'length'
    min_messages: Optional[int] = None
    max_messages: Optional[int] = None


@dataclass
class KeywordCondition:
    rule_type: ClassVar[str] = 'keyword'
    keywords: List[str] = field(default_factory=list)
    match_type: str = 'any'  # any | all


@dataclass
class TimeCondition:
    rule_type: ClassVar[str] = 'time'
    interval: Optional[str] = None
    days_of_week: Optional[List[int]] = None  # 0 = Sunday ... 6 = Saturday
    specific_time: Optional[str] = None

    def interval_delta(self) -> Optional[timedelta]:
        return parse_interval(self.interval) if self.interval else None


@dataclass
class UnknownCondition:
    rule_type: str
    payload: Dict[str, Any] = field(default_factory=dict)


RuleCondition = Union[LengthCondition, KeywordCondition, TimeCondition, UnknownCondition]


def _optional_int(payload: Dict[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f'{key} must be a number, got {value!r}')
    return int(value)


def parse_conditions(rule_type: str, payload: Optional[Dict[str, Any]]) -> RuleCondition:
    """Parse a stored conditions object into its typed variant.

    Raises:
        ValidationError: If a known rule type carries a malformed payload
    """
    payload = payload or {}

    if rule_type == 'length':
        return LengthCondition(min_messages=_optional_int(payload, 'minMessages'),
                               max_messages=_optional_int(payload, 'maxMessages'))

    if rule_type == 'keyword':
        keywords = payload.get('keywords') or []
        if not isinstance(keywords, list) or not all(isinstance(k, str) for k in keywords):
            raise ValidationError('keywords must be a list of strings')
        match_type = payload.get('matchType') or 'any'
        if match_type not in ('any', 'all'):
            raise ValidationError(f'matchType must be "any" or "all", got {match_type!r}')
        return KeywordCondition(keywords=keywords, match_type=match_type)

    if rule_type == 'time':
        days = payload.get('daysOfWeek')
        if days is not None and (not isinstance(days, list) or not all(isinstance(d, int) and 0 <= d <= 6 for d in days)):
            raise ValidationError('daysOfWeek must be a list of integers between 0 and 6')
        return TimeCondition(interval=payload.get('interval'), days_of_week=days, specific_time=payload.get('specificTime'))

    return UnknownCondition(rule_type=rule_type, payload=payload)


@dataclass
class GenerateSummaryAction:
    type: ClassVar[str] = 'generate_summary'
    style: str = 'brief'


@dataclass
class BackupAction:
    type: ClassVar[str] = 'backup'
    destination: str = 'gdrive'


@dataclass
class NotifyAction:
    type: ClassVar[str] = 'notify'
    method: str = 'email'
    message: Optional[str] = None


@dataclass
class ExportAction:
    type: ClassVar[str] = 'export'
    format: str = 'json'
    destination: Optional[str] = None


@dataclass
class TagAction:
    type: ClassVar[str] = 'tag'
    tags: List[str] = field(default_factory=list)


TriggerAction = Union[GenerateSummaryAction, BackupAction, NotifyAction, ExportAction, TagAction]


def parse_actions(actions: Optional[Dict[str, Any]],
                  default_backup_destination: str = 'gdrive',
                  default_notify_method: str = 'email') -> List[TriggerAction]:
    """Translate a rule's actions object into typed actions, in a fixed order."""
    actions = actions or {}
    parsed: List[TriggerAction] = []

    if actions.get('generateSummary'):
        parsed.append(GenerateSummaryAction(style=actions.get('summaryStyle') or 'brief'))

    if actions.get('backup'):
        parsed.append(BackupAction(destination=actions.get('backupDestination') or default_backup_destination))

    if actions.get('notify'):
        parsed.append(NotifyAction(method=actions.get('notifyMethod') or default_notify_method,
                                   message=actions.get('notifyMessage')))

    if actions.get('export'):
        parsed.append(ExportAction(format=actions.get('exportFormat') or 'json', destination=actions.get('exportDestination')))

    if actions.get('tag'):
        parsed.append(TagAction(tags=list(actions.get('tags') or [])))

    return parsed


def validate_rule(rule_type: str, conditions: Dict[str, Any], actions: Dict[str, Any]) -> None:
    """Reject malformed rule payloads before they are stored.

    Raises:
        ValidationError: If the rule type, conditions or actions are invalid
    """
    if rule_type not in RULE_TYPES:
        raise ValidationError(f'Unknown rule type: {rule_type!r}')
    if not isinstance(conditions, dict) or not isinstance(actions, dict):
        raise ValidationError('conditions and actions must be objects')

    condition = parse_conditions(rule_type, conditions)
    if isinstance(condition, TimeCondition):
        condition.interval_delta()
    if isinstance(condition, KeywordCondition) and not condition.keywords:
        raise ValidationError('keyword rules need at least one keyword')

    if not parse_actions(actions):
        raise ValidationError('rule must enable at least one action')
