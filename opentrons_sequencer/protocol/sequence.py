from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import yaml

from opentrons_sequencer.common.custom_types import ParamValue
from opentrons_sequencer.common.errors import SequenceDefinitionError
from opentrons_sequencer.protocol.template import render_script


@dataclass(frozen=True)
class WorkItem:
    """
    One step of a sequence: a protocol script and the parameters it runs with.

    WorkItems are immutable once enqueued. Feedback hooks adjust the next
    step by returning a modified copy (see `with_params`).

    Attributes
    ----------
    script :
        Path of the protocol template on the local disk.
    template :
        Inline protocol template text, used when `script` is None.
    params :
        Values substituted into the template before upload.
    runtime_params :
        Values sent as `runTimeParameterValues` when the run is created,
        for protocols that declare run-time parameters.
    name :
        Label used in logs and as the uploaded file name.
    """
    script: Optional[Path] = None
    template: Optional[str] = None
    params: Mapping[str, ParamValue] = field(default_factory=dict)
    runtime_params: Mapping[str, ParamValue] = field(default_factory=dict)
    name: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.script is None) == (self.template is None):
            raise SequenceDefinitionError("A work item needs exactly one of 'script' or 'template'")
        if self.script is not None:
            object.__setattr__(self, "script", Path(self.script))
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))
        object.__setattr__(self, "runtime_params", MappingProxyType(dict(self.runtime_params)))

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        if self.script is not None:
            return self.script.name
        return "inline"

    @property
    def filename(self) -> str:
        """File name the protocol is uploaded under (template suffixes dropped)."""
        if self.script is not None:
            name = self.script.name
            for suffix in (".tmpl", ".j2", ".template"):
                if name.endswith(suffix):
                    name = name[: -len(suffix)]
            return name if name.endswith(".py") else f"{name}.py"
        return f"{self.name or 'protocol'}.py"

    def with_params(self, **changes: ParamValue) -> WorkItem:
        """Return a copy with some template parameters replaced."""
        return replace(self, params={**self.params, **changes})

    def with_runtime_params(self, **changes: ParamValue) -> WorkItem:
        return replace(self, runtime_params={**self.runtime_params, **changes})

    def source(self) -> str:
        """Raw template text, read from disk when the item points at a file."""
        if self.template is not None:
            return self.template
        try:
            return self.script.read_text()
        except OSError as e:
            raise SequenceDefinitionError(f"Cannot read protocol script {self.script}: {e}") from e

    def render(self) -> str:
        """Protocol text with `params` substituted, as it will be uploaded."""
        return render_script(self.source(), self.params)


#---------- Sequence definition files ----------

def parse_sequence(definition: Any, base_dir: Path = Path(".")) -> List[WorkItem]:
    """
    Build WorkItems from an already-decoded sequence definition.

    Parameters
    ----------
    definition : dict | list
        Either `{"defaults": {...}, "items": [...]}` or a bare list of items.
        Each item is a mapping with `script` (path) or `template` (text),
        and optional `params`, `runtime_params` and `name`.
    base_dir : Path
        Directory relative script paths are resolved against.

    Raises
    ------
    SequenceDefinitionError
        If the structure is not as described above.
    """
    defaults: Dict[str, Any] = {}
    if isinstance(definition, dict):
        defaults = definition.get("defaults") or {}
        raw_items = definition.get("items")
    else:
        raw_items = definition

    if not isinstance(defaults, dict):
        raise SequenceDefinitionError("'defaults' must be a mapping")
    if not isinstance(raw_items, list) or not raw_items:
        raise SequenceDefinitionError("Sequence definition needs a non-empty 'items' list")

    items = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise SequenceDefinitionError(f"Item {idx} must be a mapping, got {type(raw).__name__}")
        unknown = set(raw) - {"script", "template", "params", "runtime_params", "name"}
        if unknown:
            raise SequenceDefinitionError(f"Item {idx} has unknown keys: {sorted(unknown)}")

        params = raw.get("params") or {}
        runtime_params = raw.get("runtime_params") or {}
        if not isinstance(params, dict) or not isinstance(runtime_params, dict):
            raise SequenceDefinitionError(f"Item {idx}: 'params' and 'runtime_params' must be mappings")

        script = raw.get("script")
        if script is not None:
            script = Path(script)
            if not script.is_absolute():
                script = base_dir / script

        try:
            items.append(WorkItem(
                script=script,
                template=raw.get("template"),
                params={**defaults, **params},
                runtime_params=runtime_params,
                name=raw.get("name"),
            ))
        except SequenceDefinitionError as e:
            raise SequenceDefinitionError(f"Item {idx}: {e}") from e
    return items


def load_sequence(path: Path) -> List[WorkItem]:
    """
    Load a sequence definition from a YAML (.yaml/.yml) or JSON file.

    Relative script paths are resolved against the file's directory.
    """
    path = Path(path)
    try:
        content = path.read_text()
    except OSError as e:
        raise SequenceDefinitionError(f"Cannot read sequence definition {path}: {e}") from e

    try:
        if path.suffix.lower() == ".json":
            definition = json.loads(content)
        else:
            definition = yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise SequenceDefinitionError(f"Invalid sequence definition in {path}: {e}") from e

    return parse_sequence(definition, base_dir=path.parent)
