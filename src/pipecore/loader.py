# loader.py
"""
Pipeline loading from local files.

A Python file must define either:
  - pipeline() -> List[JobSpec]
  - JOBS = [JobSpec, ...]
and may set NAME to name the pipeline (defaults to the file stem).

A YAML or JSON file holds a top-level `jobs` mapping (and an optional
`name`), validated with the PipelineDeclaration schema.
"""
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, List, Tuple

import yaml
from pydantic import ValidationError

from .errors import PipelineLoadError
from .model import JobSpec
from .schemas import PipelineDeclaration

PYTHON_SUFFIXES = (".py",)
DATA_SUFFIXES = (".yml", ".yaml", ".json")


def load_pipeline(path: str | Path) -> Tuple[str, List[JobSpec]]:
    """Return (pipeline name, jobs) declared in `path`."""
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")

    if p.suffix in PYTHON_SUFFIXES:
        return _load_python(p)
    if p.suffix in DATA_SUFFIXES:
        return _load_data(p)
    raise PipelineLoadError(p, f"unsupported pipeline file type '{p.suffix}' (use .py, .yml, .yaml or .json)")


def _stem(p: Path) -> str:
    name = p.name
    for suffix in (".pipeline.yml", ".pipeline.yaml", ".pipeline.json", "_pipeline.py"):
        if name.endswith(suffix):
            return name[: -len(suffix)] or p.stem
    return p.stem


def _load_python(p: Path) -> Tuple[str, List[JobSpec]]:
    module_name = f"pipecore_pipeline_{p.stem}"
    globals_dict = runpy.run_path(str(p), run_name=module_name)

    jobs: Any = None
    if "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
        jobs = globals_dict["pipeline"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, JobSpec) for j in jobs):
        raise PipelineLoadError(
            p,
            "pipeline must return/define a List[JobSpec]. "
            "Define pipeline() -> List[JobSpec] or JOBS = [JobSpec, ...].",
        )
    return str(globals_dict.get("NAME") or _stem(p)), jobs


def _load_data(p: Path) -> Tuple[str, List[JobSpec]]:
    text = p.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if p.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise PipelineLoadError(p, f"could not parse file: {e}") from e

    if not isinstance(data, dict):
        raise PipelineLoadError(p, "expected a mapping with a top-level 'jobs' key")
    data.setdefault("name", _stem(p))
    return declaration_to_specs(data, source=p)


def declaration_to_specs(data: Any, *, source: str | Path = "<declaration>") -> Tuple[str, List[JobSpec]]:
    try:
        decl = data if isinstance(data, PipelineDeclaration) else PipelineDeclaration.model_validate(data)
    except ValidationError as e:
        details = [f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise PipelineLoadError(source, "invalid pipeline declaration", details) from e

    try:
        return decl.name, decl.to_specs()
    except ValueError as e:
        raise PipelineLoadError(source, str(e)) from e


def find_pipeline_files(directory: str | Path = ".") -> List[Path]:
    """pipecore_pipeline.py first, then *_pipeline.py and *.pipeline.yml in name order."""
    root = Path(directory)
    default = root / "pipecore_pipeline.py"
    found = {p for p in root.glob("*_pipeline.py")}
    found |= {p for p in root.glob("*.pipeline.yml")}
    found |= {p for p in root.glob("*.pipeline.yaml")}
    found.discard(default)

    files = [default] if default.exists() else []
    return files + sorted(found)
