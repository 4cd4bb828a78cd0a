"""Message executor."""

from ..core.exceptions import PermanentExecutionError
from ..core.templating import render_template
from ..models.nodes import MessageConfig
from .base import ExecutionContext, NodeOutcome


def execute_message(config: MessageConfig, ctx: ExecutionContext) -> NodeOutcome:
    """
    Render the message for the contact and hand it to the messaging gateway.

    Raises:
        PermanentExecutionError: If the contact cannot receive messages or the
            rendered body is empty
        TransientExecutionError: If the gateway timed out or asked for a retry
    """
    contact = ctx.contact()
    if not contact.phone:
        raise PermanentExecutionError("Contact has no phone number", **ctx.error_context())

    scope = ctx.scope()
    content = render_template(config.content, scope) if config.content else None
    if not config.template_ref and not (content and content.strip()):
        raise PermanentExecutionError("Rendered message body is empty", **ctx.error_context())

    variables = {
        name: render_template(template, scope)
        for name, template in config.template_variables.items()
    }
    media_url = render_template(config.media_url, scope) if config.media_url else None

    message_id = ctx.call_external(
        ctx.messaging.send,
        "Messaging gateway send",
        contact.phone,
        content=content,
        template_ref=config.template_ref,
        template_variables=variables or None,
        media_url=media_url
    )

    return NodeOutcome(
        context_updates={f"message_{ctx.node.id}": message_id},
        messages_sent=1,
        detail=f"sent message {message_id}"
    )
