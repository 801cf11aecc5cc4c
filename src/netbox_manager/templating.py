#!/usr/bin/env python3
"""
Jinja2 rendering for generated documents.

Templates ship inside the package (netbox_manager/templates). Every value
that ends up in a compose document goes through the `q` filter, which
emits a double-quoted YAML scalar with `$` doubled so compose never
interpolates it.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / 'templates'


def compose_quote(value) -> str:
    """
    Quote a value for a compose YAML document.

    Examples:
        >>> compose_quote('a$b')
        '"a$$b"'
        >>> compose_quote(True)
        '"true"'
    """
    if isinstance(value, bool):
        value = 'true' if value else 'false'
    return json.dumps(str(value).replace('$', '$$'))


def make_environment(template_dir: Path = TEMPLATE_DIR) -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(template_dir)),
        undefined=StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        autoescape=False,
    )
    env.filters['q'] = compose_quote
    return env


_environment = None


def render_template(name: str, context: dict) -> str:
    """
    Render a packaged template with the given context.

    Raises:
        TemplateError: If the template is missing or references an undefined value
    """
    global _environment
    if _environment is None:
        _environment = make_environment()

    logger.debug(f"Rendering template: {name}")
    try:
        rendered = _environment.get_template(name).render(**context)
    except TemplateError as e:
        logger.error(f"Failed to render template {name}: {e}")
        raise

    logger.debug(f"  Rendered output size: {len(rendered)} bytes")
    return rendered
