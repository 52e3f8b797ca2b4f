"""Service-level prompt templates with ``{{input}}`` placeholders."""

import re

from mcp import types
from mcp.shared.exceptions import McpError

from cap_mcp.annotations.structures import PromptAnnotation, PromptTemplate
from cap_mcp.log_config import get_logger
from cap_mcp.mcp.registry import InvocationContext, McpRegistry, RegisteredPrompt

log = get_logger("tools.prompts")

_PLACEHOLDER = re.compile(r"\{\{([^{}]+)\}\}")


def render_template(template: str, arguments: dict[str, str], strict: bool = False) -> str:
    """Substitute ``{{key}}`` placeholders.

    Lenient rendering leaves unresolved placeholders verbatim; strict
    rendering rejects them.

    Raises:
        McpError: INVALID_PARAMS naming the unresolved placeholders (strict only)
    """
    rendered = template
    for key, value in arguments.items():
        rendered = rendered.replace(f"{{{{{key}}}}}", str(value))

    unresolved = sorted(set(_PLACEHOLDER.findall(rendered)))
    if unresolved:
        if strict:
            raise McpError(
                types.ErrorData(
                    code=types.INVALID_PARAMS,
                    message=f"Missing prompt inputs: {', '.join(unresolved)}",
                )
            )
        log.debug(f"Leaving unresolved prompt placeholders: {unresolved}")
    return rendered


def _arguments(prompt: PromptTemplate) -> list[types.PromptArgument]:
    return [
        types.PromptArgument(name=item.key, description=f"{item.key} ({item.type})", required=True)
        for item in prompt.inputs
    ]


def assign_prompts(annotation: PromptAnnotation, registry: McpRegistry, strict: bool = False) -> None:
    for prompt in annotation.prompts:

        async def handler(arguments: dict[str, str], context: InvocationContext, prompt=prompt):
            text = render_template(prompt.template, arguments, strict)
            return types.GetPromptResult(
                description=prompt.description or None,
                messages=[
                    types.PromptMessage(role=prompt.role, content=types.TextContent(type="text", text=text))
                ],
            )

        registry.add_prompt(
            RegisteredPrompt(
                name=prompt.name,
                title=prompt.title,
                description=prompt.description,
                handler=handler,
                arguments=_arguments(prompt),
            )
        )
