"""
Prompt template management system.

This module provides functionality for loading prompt templates, rendering
them with permissive placeholder substitution, and assembling the message
sequence sent to a provider from a user query plus code, project and
conversation context.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..core.exceptions import UnknownTemplateError

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"
DEFAULT_HISTORY_LIMIT = 5


@dataclass
class PromptTemplate:
    """A loaded prompt template with the placeholders it declares."""
    name: str
    content: str
    parameters: list[str] = field(default_factory=list)
    source: Path | None = None


class PromptManager:
    """
    Manages prompt templates and prompt assembly.

    Features:
    - Built-in templates loaded from the package ``templates`` directory
    - Custom templates registered at runtime or loaded from files
    - Permissive rendering: unresolved ``{placeholders}`` are dropped
    - Message assembly with code context, project context and recent history
    """

    def __init__(
        self,
        templates_dir: str | Path | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        """
        Initialize the prompt manager.

        Args:
            templates_dir: Directory of ``*.txt`` templates (defaults to the built-ins)
            history_limit: Number of most recent history entries ``create_prompt`` keeps
        """
        self.templates_dir = Path(templates_dir) if templates_dir else TEMPLATES_DIR
        self.history_limit = history_limit
        self._templates: dict[str, PromptTemplate] = {}

        # Parameter extraction pattern for {parameter_name} format
        self._param_pattern = re.compile(r"\{([a-zA-Z0-9_]+)\}")

        self._load_directory(self.templates_dir)
        logger.info(
            f"Initialized PromptManager with {len(self._templates)} templates "
            f"from {self.templates_dir}"
        )

    def _load_directory(self, directory: Path) -> None:
        if not directory.exists():
            logger.warning(f"Template directory not found: {directory}")
            return
        for path in sorted(directory.glob("*.txt")):
            self.load_template_from_file(path, path.stem)

    def register_template(self, name: str, content: str) -> PromptTemplate:
        """Register (or replace) a template under ``name``."""
        template = PromptTemplate(
            name=name, content=content, parameters=self._extract_parameters(content)
        )
        self._templates[name] = template
        logger.debug(f"Registered template '{name}' with parameters: {template.parameters}")
        return template

    def load_template_from_file(self, file_path: str | Path, template_name: str) -> bool:
        """
        Load a template from a text file.

        Args:
            file_path: Path of the template file
            template_name: Name to register the template under

        Returns:
            True if the template was loaded, False if the file could not be read
        """
        path = Path(file_path)
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Error loading template from {path}: {e}")
            return False

        template = self.register_template(template_name, content)
        template.source = path
        return True

    def get_template(self, template_name: str) -> PromptTemplate:
        try:
            return self._templates[template_name]
        except KeyError:
            raise UnknownTemplateError(template_name) from None

    def list_templates(self) -> list[str]:
        return sorted(self._templates)

    def get_template_parameters(self, template_name: str) -> list[str]:
        """
        Get the list of parameters declared by a template.

        Raises:
            UnknownTemplateError: Template is not registered
        """
        return list(self.get_template(template_name).parameters)

    def validate_parameters(self, template_name: str, parameters: dict[str, Any]) -> bool:
        """
        Check that every declared parameter has a value.

        ``format_template`` never fails on missing values; callers that need
        strict behavior check here first.
        """
        template = self.get_template(template_name)
        return set(template.parameters).issubset(parameters.keys())

    def format_template(self, template_name: str, variables: dict[str, Any] | None = None) -> str:
        """
        Render a template with placeholder substitution.

        Every ``{key}`` occurrence is replaced by its value (``None`` renders
        as an empty string); placeholders with no value are removed.

        Args:
            template_name: Name of a registered template
            variables: Values to substitute

        Returns:
            Rendered text

        Raises:
            UnknownTemplateError: Template is not registered
        """
        result = self.get_template(template_name).content

        for key, value in (variables or {}).items():
            result = result.replace(f"{{{key}}}", "" if value is None else str(value))

        return self._param_pattern.sub("", result)

    def create_prompt(
        self,
        user_query: str,
        template_name: str = "system",
        template_variables: dict[str, Any] | None = None,
        code_context: list[dict[str, Any]] | None = None,
        conversation_history: list[dict[str, str]] | None = None,
        project_context: str = "",
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> dict[str, Any]:
        """
        Assemble ``[system, ...recent history, user]`` for a provider.

        Args:
            user_query: The user's request
            template_name: Template rendered as the system message
            template_variables: Variables for the system template
            code_context: Entries with ``file_name``/``path``, ``language`` and ``code``
            conversation_history: Prior ``{role, content}`` messages, oldest first
            project_context: Free-form project description
            temperature: Sampling temperature passed through to the result
            max_tokens: Generation limit passed through to the result

        Returns:
            Dict with ``messages``, ``temperature`` and ``max_tokens``
        """
        messages = [
            {"role": "system", "content": self.format_template(template_name, template_variables)}
        ]

        if conversation_history:
            messages.extend(self.optimize_conversation_history(conversation_history))

        code_context_str = self.prepare_code_context(code_context) if code_context else ""
        project_context_str = (
            f"\n# Project Context\n{project_context}\n" if project_context else ""
        )

        messages.append(
            {
                "role": "user",
                "content": f"{project_context_str}\n{code_context_str}\n{user_query}",
            }
        )

        return {"messages": messages, "temperature": temperature, "max_tokens": max_tokens}

    def optimize_conversation_history(self, history: list[dict[str, str]]) -> list[dict[str, str]]:
        """Keep the ``history_limit`` most recent entries."""
        if self.history_limit <= 0:
            return []
        return [
            {"role": entry["role"], "content": entry["content"]}
            for entry in history[-self.history_limit:]
        ]

    def prepare_code_context(self, code_context: list[dict[str, Any]]) -> str:
        result = "# Code Context\n\n"
        for entry in code_context:
            label = entry.get("file_name") or entry.get("path") or ""
            language = entry.get("language") or "javascript"
            result += f"## File: {label}\n\n"
            result += f"```{language}\n{entry.get('code', '')}\n```\n\n"
        return result

    def estimate_token_count(self, prompt: dict[str, Any] | list[dict[str, str]]) -> int:
        """Estimate tokens for a prompt at roughly four characters per token."""
        messages = prompt["messages"] if isinstance(prompt, dict) else prompt
        total_chars = sum(len(message["content"]) for message in messages)
        return math.ceil(total_chars / 4)

    def _extract_parameters(self, content: str) -> list[str]:
        """Extract parameter names from template content."""
        return sorted(set(self._param_pattern.findall(content)))
