"""AI executor: delegates to the AI provider and stores a structured result."""

import json
import re
from typing import Any

from ..core.exceptions import ConfigurationError, PermanentExecutionError
from ..core.templating import render_template
from ..integrations.base import AIBudgetExceededError, CollaboratorError
from ..models.nodes import AIAction, AIConfig
from .base import ExecutionContext, NodeOutcome, translate_collaborator_error

SENTIMENT_LABELS = ("positive", "negative", "neutral")

_JSON_OBJECT = re.compile(r'\{.*\}', re.DOTALL)


def build_prompt(config: AIConfig, text: str) -> str:
    """Wrap the rendered prompt with instructions for the configured action."""
    if config.action == AIAction.SENTIMENT_ANALYSIS:
        return (
            "Classify the sentiment of the following text as positive, negative or neutral. "
            "Answer with a single word.\n\n" + text
        )
    if config.action == AIAction.CATEGORIZE:
        return (
            f"Categorize the following text into exactly one of: {', '.join(config.categories)}. "
            "Answer with the category only.\n\n" + text
        )
    if config.action == AIAction.EXTRACT_INFO:
        fields = ", ".join(config.extraction_fields) or "any relevant fields"
        return (
            f"Extract the following fields from the text: {fields}. "
            "Answer with a JSON object only.\n\n" + text
        )
    if config.action == AIAction.TRANSLATE:
        source = f" from {config.source_language}" if config.source_language else ""
        return (
            f"Translate the following text{source} to {config.target_language}. "
            "Answer with the translation only.\n\n" + text
        )
    return text


def parse_result(config: AIConfig, text: str) -> Any:
    """Turn completion text into the value stored in context."""
    text = text.strip()
    if config.action == AIAction.SENTIMENT_ANALYSIS:
        label = re.sub(r'[^a-z]', '', text.split()[0].lower()) if text else ""
        return label if label in SENTIMENT_LABELS else "neutral"

    if config.action == AIAction.CATEGORIZE:
        lowered = text.lower()
        for category in config.categories:
            if category.lower() == lowered:
                return category
        for category in config.categories:
            if category.lower() in lowered:
                return category
        return text

    if config.action == AIAction.EXTRACT_INFO:
        match = _JSON_OBJECT.search(text)
        try:
            data = json.loads(match.group(0)) if match else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if config.extraction_fields:
            return {name: data.get(name) for name in config.extraction_fields}
        return data

    return text


def execute_ai(config: AIConfig, ctx: ExecutionContext) -> NodeOutcome:
    """
    Ask the AI provider and store the parsed result.

    Raises:
        ConfigurationError: If no provider is wired in, the model is not allowed
            or the prompt renders empty
        PermanentExecutionError: If the organization's AI budget is exhausted
        TransientExecutionError: If the provider timed out or asked for a retry
    """
    if ctx.ai_provider is None:
        raise ConfigurationError("No AI provider configured", node_id=ctx.node.id)
    if config.model not in ctx.policy.ai_models:
        raise ConfigurationError(f"AI model '{config.model}' is not allowed", config_key="model", node_id=ctx.node.id)

    rendered = render_template(config.prompt, ctx.scope())
    if not rendered.strip():
        raise ConfigurationError("AI prompt rendered empty", config_key="prompt", node_id=ctx.node.id)

    try:
        completion = ctx.runner.call(
            ctx.ai_provider.complete,
            ctx.call_timeout,
            "AI provider completion",
            build_prompt(config, rendered),
            config.model,
            config.max_tokens,
            config.temperature
        )
    except AIBudgetExceededError as e:
        raise PermanentExecutionError(f"AI budget exceeded: {e.message}", **ctx.error_context())
    except CollaboratorError as e:
        raise translate_collaborator_error(e, "AI provider completion", ctx)

    result = parse_result(config, completion.text)
    variable = config.result_variable or f"ai_{ctx.node.id}"
    return NodeOutcome(
        context_updates={variable: result},
        detail=f"{config.action.value} completed with {config.model}"
    )
