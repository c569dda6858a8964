"""
Jinja2 rendering of the matching prompts.

The matching call carries two prompts rendered from prompts/matching/: the
fixed system rules and the per-batch request listing the catalog summary and
the unmatched records. Templates render with StrictUndefined, so a prompt is
never sent with a silently empty section.
"""

import re
from pathlib import Path
from typing import Any, Optional, Sequence

import structlog
from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    TemplateSyntaxError,
    UndefinedError,
)

logger = structlog.get_logger(__name__)

SYSTEM_RULES_TEMPLATE = "matching/system_rules.j2"
BATCH_REQUEST_TEMPLATE = "matching/batch_request.j2"

# course_reconciler/utils/ -> project root
DEFAULT_TEMPLATE_DIR = Path(__file__).parent.parent.parent / "prompts"


def oneline(text: Optional[str]) -> str:
    """Collapse whitespace runs so record text cannot break the prompt layout."""
    if not text:
        return ""
    return re.sub(r"\s+", " ", str(text)).strip()


class PromptLoader:
    """Loads and renders the matching prompt templates."""

    def __init__(self, template_dir: Optional[Path] = None) -> None:
        """
        Args:
            template_dir: Template root (defaults to the project's prompts/)
        """
        self.template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            undefined=StrictUndefined,
        )
        self.env.filters["oneline"] = oneline

    def render(
        self,
        template_name: str,
        correlation_id: Optional[str] = None,
        **variables: Any,
    ) -> str:
        """
        Render a template relative to the template root.

        Raises:
            TemplateNotFound: If the template file doesn't exist
            TemplateSyntaxError: If the template has syntax errors
            UndefinedError: If the template uses a variable that was not passed
        """
        log = logger.bind(template_name=template_name, correlation_id=correlation_id)

        try:
            rendered = self.env.get_template(template_name).render(**variables)
        except TemplateNotFound as e:
            log.error("Template not found", template_dir=str(self.template_dir), error=str(e))
            raise
        except TemplateSyntaxError as e:
            log.error("Template syntax error", error=str(e), lineno=e.lineno)
            raise
        except UndefinedError as e:
            log.error(
                "Undefined variable in template",
                error=str(e),
                variables_provided=sorted(variables),
            )
            raise

        log.debug("Template rendered", rendered_length=len(rendered))
        return rendered

    def render_system_rules(
        self,
        rules: Sequence[str],
        confidence_flag_threshold: int,
        correlation_id: Optional[str] = None,
    ) -> str:
        return self.render(
            SYSTEM_RULES_TEMPLATE,
            correlation_id=correlation_id,
            rules=rules,
            confidence_flag_threshold=confidence_flag_threshold,
        )

    def render_batch_request(
        self,
        catalog_summary: Any,
        records: Sequence[Any],
        grade_context: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> str:
        return self.render(
            BATCH_REQUEST_TEMPLATE,
            correlation_id=correlation_id,
            catalog_summary=catalog_summary,
            records=records,
            grade_context=grade_context,
        )
