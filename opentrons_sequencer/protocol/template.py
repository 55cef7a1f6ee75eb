"""
Protocol script rendering.

A protocol template is ordinary Python protocol source with `$name`
placeholders (`string.Template` syntax, `$$` for a literal dollar sign):

    TARGET_TEMP = $temperature
    protocol.delay(seconds=$delay_seconds)

Rendering is a pure function of (template, params); the orchestrator only
ever sees the resulting text.
"""

from __future__ import annotations

from string import Template
from typing import Mapping
from opentrons_sequencer.common.custom_types import ParamValue
from opentrons_sequencer.common.errors import TemplateError


def render_script(template: str, params: Mapping[str, ParamValue]) -> str:
    """
    Substitute named parameters into a protocol template.

    Parameters
    ----------
    template : str
        Protocol source containing `$name` / `${name}` placeholders.
    params : Mapping[str, ParamValue]
        Values to substitute. Numbers are written with `str()`, so
        temperature=20 renders as `20`.

    Returns
    -------
    str
        The rendered protocol text.

    Raises
    ------
    TemplateError
        If a placeholder has no matching parameter or the template
        contains an invalid `$` sequence.
    """
    missing = placeholders(template) - set(params)
    if missing:
        raise TemplateError(f"Missing template parameters: {', '.join(sorted(missing))}")
    try:
        return Template(template).substitute(params)
    except ValueError as e:
        raise TemplateError(f"Invalid template: {e}") from e


def placeholders(template: str) -> set[str]:
    """Names of the `$name` / `${name}` placeholders a template references."""
    names = set()
    for match in Template.pattern.finditer(template):
        name = match.group("named") or match.group("braced")
        if name:
            names.add(name)
    return names
