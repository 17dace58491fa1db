"""
Jinja2-based prompt templates for the classifier service.

Templates live in prompts/<task>/{system,user}.jinja2 and are rendered in a
sandboxed environment. Prompts are plain text, so autoescaping is off; flow
data is embedded with the tojson filter.
"""

from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined, TemplateNotFound
from jinja2.sandbox import SandboxedEnvironment


class PromptManager:
    """Manages Jinja2 prompt templates for classifier requests."""

    def __init__(self, templates_dir: Path | None = None):
        """
        Initialize prompt manager.

        Args:
            templates_dir: Path to templates directory.
                          Defaults to prompts/ in this package.
        """
        if templates_dir is None:
            templates_dir = Path(__file__).parent / "prompts"

        self.templates_dir = Path(templates_dir)

        self.env = SandboxedEnvironment(
            loader=FileSystemLoader(self.templates_dir),
            autoescape=False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render_prompt(self, template_name: str, **context: Any) -> str:
        """
        Render a prompt template with context variables.

        Args:
            template_name: Template path (e.g., "categorize/user.jinja2")
            **context: Template variables to render

        Returns:
            Rendered prompt string

        Raises:
            TemplateNotFound: If the template file doesn't exist
        """
        try:
            template = self.env.get_template(template_name)
            return template.render(**context).strip()
        except TemplateNotFound as e:
            raise TemplateNotFound(
                f"Template '{template_name}' not found in {self.templates_dir}"
            ) from e

    def render_messages(self, task: str, **context: Any) -> list[dict[str, str]]:
        """
        Render the system and user messages for a task.

        Args:
            task: Template directory name (categorize, anomalies, ...)
            **context: Variables for both templates

        Returns:
            Chat messages in OpenAI format
        """
        return [
            {
                "role": "system",
                "content": self.render_prompt(f"{task}/system.jinja2", **context),
            },
            {
                "role": "user",
                "content": self.render_prompt(f"{task}/user.jinja2", **context),
            },
        ]

    def list_templates(self) -> list[str]:
        """List all available templates relative to templates_dir."""
        templates = []
        for template_file in self.templates_dir.rglob("*.jinja2"):
            relative_path = template_file.relative_to(self.templates_dir)
            templates.append(str(relative_path))
        return sorted(templates)
