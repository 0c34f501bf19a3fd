"""Template registry and rendering."""

from foobot.core.render.renderer import (
    HANDLER_ERROR,
    HANDLER_TIMEOUT,
    NO_SUCH_COMMAND,
    PERMISSION_DENIED,
    RENDER_ERROR,
    REQUIRED_TEMPLATES,
    CompiledTemplate,
    Renderer,
    compile_template,
    normalize,
)

__all__ = [
    "Renderer",
    "CompiledTemplate",
    "compile_template",
    "normalize",
    "REQUIRED_TEMPLATES",
    "NO_SUCH_COMMAND",
    "HANDLER_ERROR",
    "HANDLER_TIMEOUT",
    "PERMISSION_DENIED",
    "RENDER_ERROR",
]
