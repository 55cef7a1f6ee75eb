from dataclasses import asdict
from pathlib import Path
from typing import Optional
import json
import tempfile
import uuid
import zipfile

import yaml
from fastapi import FastAPI, Form, HTTPException, UploadFile

from opentrons_control.backend.app.manager import JobManager, load_robots
from opentrons_sequencer.common.config import configure_logging, get_settings
from opentrons_sequencer.common.errors import SequenceDefinitionError
from opentrons_sequencer.protocol.sequence import WorkItem, load_sequence, parse_sequence

SEQUENCE_SUFFIXES = (".yaml", ".yml", ".json", ".zip")


def _items_from_upload(filename: str, content: bytes):
    """
    Turn an uploaded sequence definition into work items.

    A bare YAML/JSON definition may only use inline `template:` items.
    A .zip archive carries the definition (sequence.yaml / sequence.json
    at its root) together with the script files it refers to.
    """
    if filename.endswith(".zip"):
        with tempfile.TemporaryDirectory() as tmp:
            tmpdir = Path(tmp)
            archive_path = tmpdir / filename
            archive_path.write_bytes(content)

            extract_dir = tmpdir / "extracted"
            extract_dir.mkdir()
            try:
                with zipfile.ZipFile(archive_path) as zf:
                    zf.extractall(extract_dir)
            except zipfile.BadZipFile as e:
                raise SequenceDefinitionError(f"Invalid archive {filename}: {e}") from e

            for name in ("sequence.yaml", "sequence.yml", "sequence.json"):
                if (extract_dir / name).exists():
                    items = load_sequence(extract_dir / name)
                    break
            else:
                raise SequenceDefinitionError("Archive has no sequence.yaml or sequence.json")

            # Scripts may only come from the archive, never from the server's disk
            root = extract_dir.resolve()
            for idx, item in enumerate(items):
                if item.script is not None and not item.script.resolve().is_relative_to(root):
                    raise SequenceDefinitionError(f"Item {idx}: script {item.script} is outside the archive")

            # Scripts are read now, before the temporary directory goes away
            return [
                item if item.script is None else
                WorkItem(template=item.source(), params=item.params,
                         runtime_params=item.runtime_params,
                         name=item.name or item.filename.removesuffix(".py"))
                for item in items
            ]

    try:
        text = content.decode("utf-8")
        definition = json.loads(text) if filename.endswith(".json") else yaml.safe_load(text)
    except (UnicodeDecodeError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise SequenceDefinitionError(f"Invalid sequence definition {filename}: {e}") from e

    items = parse_sequence(definition)
    if any(item.script is not None for item in items):
        raise SequenceDefinitionError("Items referring to script files must be uploaded as a .zip archive")
    return items


def create_app(manager: Optional[JobManager] = None) -> FastAPI:
    settings = get_settings()
    if manager is None:
        configure_logging(settings.log_level)
        manager = JobManager(robots=load_robots(settings.robots_file), settings=settings)

    app = FastAPI(title="Opentrons sequencer")
    app.state.manager = manager

    @app.get("/health")
    def health():
        return {"status": "ok", "robots": sorted(manager.robots)}

    @app.post("/jobs")
    async def submit_job(file: UploadFile, robot_id: str = Form(...), job_id: Optional[str] = Form(None)):
        if not file.filename or not file.filename.endswith(SEQUENCE_SUFFIXES):
            raise HTTPException(status_code=400,
                                detail=f"Only {', '.join(SEQUENCE_SUFFIXES)} files supported")
        try:
            items = _items_from_upload(file.filename, await file.read())
        except SequenceDefinitionError as e:
            raise HTTPException(status_code=400, detail=str(e))

        try:
            state = await manager.submit_job(
                job_id=job_id or uuid.uuid4().hex,
                robot_id=robot_id,
                items=items,
            )
        except KeyError as e:
            raise HTTPException(status_code=404, detail=str(e.args[0]))
        except RuntimeError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return asdict(state)

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str):
        try:
            return asdict(manager.get_state(job_id))
        except KeyError as e:
            raise HTTPException(status_code=404, detail=str(e.args[0]))

    @app.post("/jobs/{job_id}/abort")
    async def abort_job(job_id: str):
        try:
            return asdict(await manager.abort_job(job_id))
        except KeyError as e:
            raise HTTPException(status_code=404, detail=str(e.args[0]))

    return app


app = create_app()
