# executors/docker.py
from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional, Protocol

from ..model import JobKind, JobResult, utcnow
from .base import ExecutionContext, JobExecutor, ToolFailure, run_tool, split_list


@dataclass(frozen=True)
class ImageOutcome:
    digest: str
    tags: List[str] = field(default_factory=list)


class ImageBuilder(Protocol):
    def build(
        self,
        *,
        dockerfile: str,
        context: str,
        platforms: List[str],
        tags: List[str],
        push: bool,
        registry: str,
        username: str = "",
        password: str = "",
    ) -> ImageOutcome: ...


class BuildxImageBuilder:
    """docker buildx build, reading the digest from buildx's metadata file."""

    def build(
        self,
        *,
        dockerfile: str,
        context: str,
        platforms: List[str],
        tags: List[str],
        push: bool,
        registry: str,
        username: str = "",
        password: str = "",
    ) -> ImageOutcome:
        if push and username and password:
            run_tool(
                ["docker", "login", registry, "--username", username, "--password-stdin"],
                input=password,
            )

        fd, metadata_path = tempfile.mkstemp(prefix="pipecore-buildx-", suffix=".json")
        os.close(fd)
        try:
            cmd = ["docker", "buildx", "build", "--file", dockerfile, "--metadata-file", metadata_path]
            if platforms:
                cmd.extend(["--platform", ",".join(platforms)])
            for tag in tags:
                cmd.extend(["--tag", tag])
            if push:
                cmd.append("--push")
            cmd.append(context)
            run_tool(cmd)

            text = Path(metadata_path).read_text(encoding="utf-8") or "{}"
            metadata = json.loads(text)
        finally:
            Path(metadata_path).unlink(missing_ok=True)

        return ImageOutcome(digest=str(metadata.get("containerimage.digest", "")), tags=list(tags))


class DockerBuildExecutor(JobExecutor):
    kind = JobKind.DOCKER_BUILD

    def __init__(self, builder: Optional[ImageBuilder] = None):
        self.builder = builder or BuildxImageBuilder()

    def image_tags(self, inputs: Mapping[str, Any], ctx: ExecutionContext) -> List[str]:
        registry = str(inputs.get("registry") or "").rstrip("/")
        image = str(inputs["image-name"])
        repo = f"{registry}/{image}" if registry else image

        tags = [f"{repo}:{t}" for t in split_list(str(inputs.get("tag") or "latest"))]
        if ctx.pipeline.sha:
            tags.append(f"{repo}:{ctx.pipeline.sha[:7]}")
        return tags

    def execute(self, inputs: Mapping[str, Any], secrets: Mapping[str, str], ctx: ExecutionContext) -> JobResult:
        started = utcnow()
        push = bool(inputs.get("push"))
        if push and not (secrets.get("registry-username") and secrets.get("registry-password")):
            return JobResult.failure(
                "MissingCredentials",
                "push requested but registry-username/registry-password secrets are missing",
                started_at=started,
            )

        tags = self.image_tags(inputs, ctx)
        try:
            outcome = self.builder.build(
                dockerfile=str(inputs.get("dockerfile") or "Dockerfile"),
                context=str(inputs.get("context") or "."),
                platforms=split_list(str(inputs.get("platforms") or "")),
                tags=tags,
                push=push,
                registry=str(inputs.get("registry") or ""),
                username=secrets.get("registry-username", ""),
                password=secrets.get("registry-password", ""),
            )
        except ToolFailure as e:
            return self.tool_failure(e, started_at=started)
        except (OSError, ValueError) as e:
            return JobResult.failure("BuildMetadataError", str(e), started_at=started)

        return JobResult.success({"digest": outcome.digest, "tags": ",".join(outcome.tags)}, started_at=started)
