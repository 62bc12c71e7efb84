"""
Conversation Analysis Service producing summaries and insights with Bedrock LLMs.
"""

from typing import Any, List, Optional, Sequence

from ..models.core import ConversationAnalysis, Message
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.logging_config import get_logger
from .file_classifier import conversation_preview

logger = get_logger(__name__)

ANALYSIS_SYSTEM_PROMPT = """
You are an expert conversation analyst. Analyze the conversation and provide:
1. A brief summary
2. Main topics discussed
3. Overall sentiment
4. Key points or decisions made
5. Action items agreed on
6. Open follow-up questions

Return a JSON object with this exact format:
```json
{
  "summary": "one or two sentence summary",
  "topics": ["topic"],
  "sentiment": "positive|neutral|negative|mixed",
  "keyPoints": ["key point"],
  "actionItems": ["action item"],
  "followUpQuestions": ["question"]
}
```

Only include information that is present in the conversation. Use empty arrays when nothing applies."""

SUMMARY_SYSTEM_PROMPT = 'You are an expert at summarizing conversations. Write plain prose without preamble.'

SUMMARY_STYLES = {
    'brief': 'Summarize the conversation in two or three sentences.',
    'detailed': 'Write a detailed summary of the conversation covering every topic, decision and open question.',
    'bullet': 'Summarize the conversation as a markdown bullet list of its key points.',
}


def render_transcript(messages: Sequence[Message]) -> str:
    return '\n'.join(f'{message.role}: {message.content}' for message in messages)


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]


class ConversationAnalysisService:
    """Analyze conversations; every model failure degrades to a deterministic default."""

    def __init__(self, llm: Optional[BedrockLLM]):
        """
        Initialize the analysis service.

        Args:
            llm: Model client (None disables model analysis)
        """
        self.llm = llm

        logger.info('Initialized ConversationAnalysisService')

    def default_analysis(self, messages: Sequence[Message]) -> ConversationAnalysis:
        return ConversationAnalysis(summary=conversation_preview([{
            'role': m.role,
            'content': m.content
        } for m in messages]))

    def analyze(self, messages: Sequence[Message]) -> ConversationAnalysis:
        """
        Derive summary, topics, sentiment, key points, action items and follow-up questions.

        Args:
            messages: Conversation turns

        Returns:
            ConversationAnalysis (the deterministic default when the model is unavailable)
        """
        if not messages or self.llm is None:
            return self.default_analysis(messages)

        try:
            data = self.llm.extract_json(f'Analyze the following conversation:\n{render_transcript(messages)}',
                                         ANALYSIS_SYSTEM_PROMPT)
        except BedrockLLMError as e:
            logger.warning(f'Conversation analysis failed, using default analysis: {e}')
            return self.default_analysis(messages)

        if not isinstance(data, dict):
            logger.warning(f'Expected object from conversation analysis, got {type(data).__name__}')
            return self.default_analysis(messages)

        summary = data.get('summary')
        analysis = ConversationAnalysis(
            summary=summary.strip() if isinstance(summary, str) and summary.strip() else self.default_analysis(messages).summary,
            topics=_string_list(data.get('topics')),
            sentiment=str(data.get('sentiment') or 'neutral').lower(),
            key_points=_string_list(data.get('keyPoints')),
            action_items=_string_list(data.get('actionItems')),
            follow_up_questions=_string_list(data.get('followUpQuestions')))

        logger.debug(f'Analyzed conversation: {len(analysis.topics)} topics, sentiment {analysis.sentiment}')
        return analysis

    def summarize(self, messages: Sequence[Message], style: str = 'brief') -> str:
        """
        Model summary of a conversation in the requested style.

        Falls back to the deterministic transcript preview when the model fails.
        """
        if not messages or self.llm is None:
            return self.default_analysis(messages).summary

        instruction = SUMMARY_STYLES.get(style, SUMMARY_STYLES['brief'])
        try:
            summary = self.llm.complete(f'{instruction}\n\nConversation:\n{render_transcript(messages)}', SUMMARY_SYSTEM_PROMPT)
        except BedrockLLMError as e:
            logger.warning(f'Summary generation failed, using transcript preview: {e}')
            return self.default_analysis(messages).summary

        return summary or self.default_analysis(messages).summary
