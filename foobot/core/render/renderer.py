"""
Renderer - Template Registry and Rendering

Purpose
-------
Load every reply template once at startup and render handler outputs into
chat text. Templates are Jinja2 sources with `StrictUndefined`, so a context
that does not satisfy a template is reported instead of rendered blank.

Responsibilities
----------------
- Load ``*.txt`` / ``*.j2`` files from the template directory (name = stem)
- Fail startup with `TemplateLoadError` on unreadable or malformed templates,
  or when a required fallback template is missing
- Detect missing variables before rendering (``missing_variable``)
- Map Jinja2 runtime failures to ``type_mismatch``
- Normalize output to one chat line (strip, collapse newlines)

Non-Responsibilities
--------------------
- Deciding which template to use (Dispatcher)
- Escaping for any markup language (chat is plain text)

Architecture Notes
------------------
- The registry is immutable after `Renderer.load()`; templates are never
  reloaded while running.
- Rendering is pure: the same template and context always produce the same
  text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from jinja2 import (
    Environment,
    StrictUndefined,
    Template,
    TemplateError,
    TemplateSyntaxError,
    UndefinedError,
    meta,
)

from foobot.core.exceptions import RenderError, TemplateLoadError, TemplateNotFound
from foobot.core.logging.logger import get_logger

logger = get_logger(__name__)

TEMPLATE_SUFFIXES = (".txt", ".j2")

NO_SUCH_COMMAND = "no_such_command"
HANDLER_ERROR = "handler_error"
HANDLER_TIMEOUT = "handler_timeout"
PERMISSION_DENIED = "permission_denied"
RENDER_ERROR = "render_error"

REQUIRED_TEMPLATES: Tuple[str, ...] = (
    NO_SUCH_COMMAND,
    HANDLER_ERROR,
    HANDLER_TIMEOUT,
    PERMISSION_DENIED,
    RENDER_ERROR,
)


def create_environment() -> Environment:
    return Environment(
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=False,
    )


def normalize(text: str) -> str:
    """Strip every line and join the non-empty ones with single spaces."""
    return " ".join(line.strip() for line in text.splitlines() if line.strip())


@dataclass(frozen=True)
class CompiledTemplate:
    name: str
    source: str
    variables: FrozenSet[str]
    template: Template = field(repr=False, compare=False)

    def render(self, context: Mapping[str, Any]) -> str:
        """
        Render with `context`.

        Raises
        ------
        RenderError
            ``missing_variable`` when a referenced top-level name is absent,
            ``type_mismatch`` when a value has the wrong shape for its use.
        """
        missing = sorted(self.variables - set(context))
        if missing:
            raise RenderError(self.name, RenderError.MISSING_VARIABLE, f"missing {', '.join(missing)}")

        try:
            rendered = self.template.render(dict(context))
        except UndefinedError as exc:
            raise RenderError(self.name, RenderError.TYPE_MISMATCH, str(exc)) from exc
        except (TypeError, ValueError, AttributeError, TemplateError) as exc:
            raise RenderError(self.name, RenderError.TYPE_MISMATCH, str(exc)) from exc

        return normalize(rendered)


def compile_template(name: str, source: str, environment: Optional[Environment] = None) -> CompiledTemplate:
    """Parse and compile one template. Raises `TemplateSyntaxError`."""
    env = environment or create_environment()
    ast = env.parse(source)
    return CompiledTemplate(
        name=name,
        source=source,
        variables=frozenset(meta.find_undeclared_variables(ast)),
        template=env.from_string(source),
    )


class Renderer:
    """
    Immutable template registry.

    Public API
    ----------
    - load(template_dir) -> Renderer (classmethod, startup only)
    - render(name, context) -> str
    - get(name) / names / variables(name)
    """

    def __init__(self, templates: Mapping[str, CompiledTemplate]) -> None:
        self._templates: Mapping[str, CompiledTemplate] = MappingProxyType(dict(templates))

    @classmethod
    def from_sources(
        cls,
        sources: Mapping[str, str],
        *,
        required: Iterable[str] = REQUIRED_TEMPLATES,
    ) -> "Renderer":
        """Build a registry from in-memory sources (name -> source)."""
        env = create_environment()
        compiled: Dict[str, CompiledTemplate] = {}
        for name, source in sources.items():
            try:
                compiled[name] = compile_template(name, source, env)
            except TemplateSyntaxError as exc:
                raise TemplateLoadError(name, f"line {exc.lineno}: {exc.message}") from exc

        cls._check_required(compiled, required, "<memory>")
        return cls(compiled)

    @classmethod
    def load(
        cls,
        template_dir: Path,
        *,
        required: Iterable[str] = REQUIRED_TEMPLATES,
    ) -> "Renderer":
        """
        Load every template in `template_dir`.

        Raises
        ------
        TemplateLoadError
            If the directory is missing, a file is unreadable or malformed,
            two files share a name, or a required template is absent.
        """
        directory = Path(template_dir)
        if not directory.is_dir():
            raise TemplateLoadError(str(directory), "template directory does not exist")

        env = create_environment()
        compiled: Dict[str, CompiledTemplate] = {}

        for path in sorted(directory.iterdir()):
            if not path.is_file() or path.suffix not in TEMPLATE_SUFFIXES:
                continue

            name = path.stem
            if name in compiled:
                raise TemplateLoadError(str(path), f"duplicate template name {name!r}")

            try:
                source = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise TemplateLoadError(str(path), str(exc)) from exc

            try:
                compiled[name] = compile_template(name, source, env)
            except TemplateSyntaxError as exc:
                raise TemplateLoadError(str(path), f"line {exc.lineno}: {exc.message}") from exc

        cls._check_required(compiled, required, str(directory))

        logger.info(
            "Templates loaded",
            extra={"template_dir": str(directory), "template_count": len(compiled)},
        )
        return cls(compiled)

    @staticmethod
    def _check_required(compiled: Mapping[str, CompiledTemplate], required: Iterable[str], where: str) -> None:
        missing = [name for name in required if name not in compiled]
        if missing:
            raise TemplateLoadError(where, f"missing required templates: {', '.join(missing)}")

    @property
    def names(self) -> FrozenSet[str]:
        return frozenset(self._templates)

    def __contains__(self, name: object) -> bool:
        return name in self._templates

    def get(self, name: str) -> Optional[CompiledTemplate]:
        return self._templates.get(name)

    def variables(self, name: str) -> FrozenSet[str]:
        template = self._templates.get(name)
        if template is None:
            raise TemplateNotFound(name)
        return template.variables

    def render(self, name: str, context: Mapping[str, Any]) -> str:
        """
        Render template `name` with `context`.

        Raises
        ------
        TemplateNotFound
            If `name` was not loaded.
        RenderError
            If the context does not satisfy the template.
        """
        template = self._templates.get(name)
        if template is None:
            raise TemplateNotFound(name)
        return template.render(context)
