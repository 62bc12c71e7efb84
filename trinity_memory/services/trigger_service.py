"""
Trigger/Rule Engine evaluating memory rules against conversation state.
"""

from datetime import datetime
from typing import Callable, Dict, List, Sequence

from ..models.catalog import MemoryRule
from ..models.core import Message
from ..models.rules import (KeywordCondition, LengthCondition, TimeCondition, TriggerAction, UnknownCondition,
                            parse_actions, parse_conditions, validate_rule)
from ..utils.catalog_client import CatalogClient
from ..utils.config import TriggerConfig
from ..utils.errors import ValidationError, best_effort
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)

ActionHandler = Callable[[TriggerAction, str, str], None]

DEFAULT_RULES = (
    {
        'rule_type': 'length',
        'conditions': {
            'minMessages': 10
        },
        'actions': {
            'generateSummary': True,
            'summaryStyle': 'detailed'
        },
    },
    {
        'rule_type': 'keyword',
        'conditions': {
            'keywords': ['important', 'remember', 'todo', 'action item'],
            'matchType': 'any'
        },
        'actions': {
            'tag': True,
            'tags': ['important'],
            'notify': True,
            'notifyMethod': 'email'
        },
    },
    {
        'rule_type': 'time',
        'conditions': {
            'interval': '1d',
            'daysOfWeek': [1, 2, 3, 4, 5]  # Weekdays
        },
        'actions': {
            'backup': True,
            'backupDestination': 'nas'
        },
    },
)


def evaluate_length(condition: LengthCondition, messages: Sequence[Message]) -> bool:
    count = len(messages)
    if condition.min_messages is not None and count < condition.min_messages:
        return False
    if condition.max_messages is not None and count > condition.max_messages:
        return False
    return True


def evaluate_keywords(condition: KeywordCondition, messages: Sequence[Message]) -> bool:
    content = ' '.join(message.content.lower() for message in messages)
    keywords = [keyword.lower() for keyword in condition.keywords]
    if not keywords:
        return False
    if condition.match_type == 'all':
        return all(keyword in content for keyword in keywords)
    return any(keyword in content for keyword in keywords)


class TriggerService:
    """Evaluate memory rules, record firings and dispatch their actions."""

    def __init__(self, catalog: CatalogClient, config: TriggerConfig, clock: Callable[[], datetime] = utc_now):
        """
        Initialize the trigger service.

        Args:
            catalog: Metadata catalog holding rules and the trigger log
            config: TriggerConfig with action defaults
            clock: Source of the current time for time rules
        """
        self.catalog = catalog
        self.config = config
        self.clock = clock
        self._handlers: Dict[str, ActionHandler] = {}

        logger.info('Initialized TriggerService')

    def register_handler(self, action_type: str, handler: ActionHandler) -> None:
        """Register the callable executing one action type; replaces any previous handler."""
        self._handlers[action_type] = handler

    def evaluate_triggers(self, conversation_id: str, messages: Sequence[Message], user_id: str) -> List[TriggerAction]:
        """
        Evaluate the user's active rules against a conversation.

        Every rule that fires gets an audit row in the trigger log and contributes
        its actions to the result.

        Args:
            conversation_id: Conversation the messages belong to
            messages: Conversation turns
            user_id: Owner of the rules

        Returns:
            Actions of all fired rules, in rule creation order
        """
        triggered: List[TriggerAction] = []

        for rule in self.catalog.list_rules(user_id, active_only=True):
            if not self.evaluate_rule(rule, messages, user_id):
                continue

            actions = parse_actions(rule.actions, self.config.default_backup_destination, self.config.default_notify_method)
            triggered.extend(actions)
            logger.info(f'Rule {rule.id} ({rule.rule_type}) fired for conversation {conversation_id}')

            with best_effort(logger, f'record trigger for rule {rule.id}'):
                self.catalog.record_trigger(rule.rule_type, conversation_id, {
                    'ruleId': rule.id,
                    'conditions': rule.conditions,
                    'actions': rule.actions,
                })

        return triggered

    def evaluate_rule(self, rule: MemoryRule, messages: Sequence[Message], user_id: str) -> bool:
        """Evaluate one rule; malformed payloads and unknown rule types evaluate to False."""
        try:
            condition = parse_conditions(rule.rule_type, rule.conditions)
            if isinstance(condition, LengthCondition):
                return evaluate_length(condition, messages)
            if isinstance(condition, KeywordCondition):
                return evaluate_keywords(condition, messages)
            if isinstance(condition, TimeCondition):
                return self._evaluate_time(condition, user_id)
        except ValidationError as e:
            logger.warning(f'Skipping rule {rule.id}: {e}')
            return False

        if isinstance(condition, UnknownCondition):
            logger.warning(f'Unknown rule type: {condition.rule_type}')
        return False

    def _evaluate_time(self, condition: TimeCondition, user_id: str) -> bool:
        now = self.clock()

        interval = condition.interval_delta()
        if interval is not None:
            last = self.catalog.last_trigger_at(user_id, 'time')
            if last is not None and now - last < interval:
                return False

        # 0 = Sunday ... 6 = Saturday
        if condition.days_of_week is not None and now.isoweekday() % 7 not in condition.days_of_week:
            return False

        return True

    def execute_trigger_actions(self, actions: Sequence[TriggerAction], conversation_id: str, user_id: str) -> List[str]:
        """
        Run each action through its registered handler.

        Actions run independently: a failing or unregistered handler is logged and
        the remaining actions still run.

        Returns:
            Types of the actions that completed
        """
        completed = []
        for action in actions:
            handler = self._handlers.get(action.type)
            if handler is None:
                logger.warning(f'No handler registered for action type: {action.type}')
                continue
            try:
                logger.info(f'Executing trigger action: {action.type} {action}')
                handler(action, conversation_id, user_id)
                completed.append(action.type)
            except Exception as e:
                logger.error(f'Failed to execute action {action.type} for conversation {conversation_id}: {e}')
        return completed

    def create_rule(self, user_id: str, rule_type: str, conditions: dict, actions: dict, is_active: bool = True) -> MemoryRule:
        """
        Validate and store a rule.

        Raises:
            ValidationError: If the payload is malformed
        """
        validate_rule(rule_type, conditions, actions)
        rule = self.catalog.create_rule(user_id, rule_type, conditions, actions, is_active)
        logger.info(f'Created {rule_type} rule {rule.id} for user {user_id}')
        return rule

    def list_rules(self, user_id: str, active_only: bool = False) -> List[MemoryRule]:
        return self.catalog.list_rules(user_id, active_only=active_only)

    def create_default_rules(self, user_id: str) -> List[MemoryRule]:
        """Create the default rule set, skipping rules the user already has."""
        existing = {(rule.rule_type, repr(rule.conditions), repr(rule.actions)) for rule in self.catalog.list_rules(user_id)}
        created = []
        for default in DEFAULT_RULES:
            key = (default['rule_type'], repr(default['conditions']), repr(default['actions']))
            if key in existing:
                continue
            created.append(self.create_rule(user_id, default['rule_type'], default['conditions'], default['actions']))

        logger.info(f'Created {len(created)} default memory rules for user {user_id}')
        return created
