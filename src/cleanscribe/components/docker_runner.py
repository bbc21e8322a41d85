"""
whisperx inside Docker.

The host workdir is mounted at /work and the model cache at /cache, so
every input/output path handed to the container has to live under the
workdir. Paths outside it are refused instead of silently pointing at
nothing inside the container.
"""
from __future__ import annotations

import re
import uuid
from pathlib import Path, PurePosixPath
from typing import List, Optional

from cleanscribe.entity.config_entity import DockerConfig
from cleanscribe.exception.exception import ContainerPathError

WORK_MOUNT = PurePosixPath("/work")
CACHE_MOUNT = PurePosixPath("/cache")

CACHE_ENV = {
    "HF_HOME": "/cache/hf",
    "TRANSFORMERS_CACHE": "/cache/hf",
    "TORCH_HOME": "/cache/torch",
    "XDG_CACHE_HOME": "/cache/xdg",
}


def container_path(path: Path, workdir: Path) -> str:
    """Host path -> /work/<relative>. Relative paths are taken from the cwd."""
    host = Path(path).resolve()
    root = Path(workdir).resolve()
    try:
        rel = host.relative_to(root)
    except ValueError:
        raise ContainerPathError(
            "input/output must be inside workdir mount",
            context={"path": str(path), "workdir": str(root)},
        )
    return str(WORK_MOUNT.joinpath(*rel.parts)) if rel.parts else str(WORK_MOUNT)


def container_name_for(wav_path: Path) -> str:
    """cleanscribe-<stem>-<8 hex>, unique per invocation."""
    stem = re.sub(r"[^A-Za-z0-9_.-]", "_", Path(wav_path).stem)
    return f"cleanscribe-{stem}-{uuid.uuid4().hex[:8]}"


def build_kill_command(docker: DockerConfig, name: str) -> List[str]:
    return [docker.docker_bin, "kill", name]


def build_docker_command(
    docker: DockerConfig,
    whisperx_args: List[str],
    in_path: Path,
    output_dir: Path,
    credential_env: str,
    token: Optional[str],
    diarize: bool,
    container_name: Optional[str] = None,
) -> List[str]:
    """
    docker run ... IMAGE whisperx /work/<in> <whisperx_args> --output_dir /work/<out> [--diarize --hf_token T]

    ``whisperx_args`` carries the model/device/precision flags, shared with
    native mode.

    ``container_name`` lets a timed-out run be stopped with ``docker kill``;
    killing the client process alone leaves the container running.
    """
    in_c = container_path(in_path, docker.workdir)
    out_c = container_path(output_dir, docker.workdir)

    cmd = [docker.docker_bin, "run", "--rm", "-i", "--gpus", docker.gpus]
    if container_name:
        cmd += ["--name", container_name]
    cmd += [
        "-v", f"{Path(docker.workdir).resolve()}:{WORK_MOUNT}",
        "-v", f"{Path(docker.cache_dir).expanduser().resolve()}:{CACHE_MOUNT}",
        "-e", f"{credential_env}={token or ''}",
    ]
    for key, value in CACHE_ENV.items():
        cmd += ["-e", f"{key}={value}"]
    cmd += [docker.image, "whisperx", in_c, *whisperx_args, "--output_dir", out_c]
    if diarize:
        cmd += ["--diarize", "--hf_token", token or ""]
    return cmd
