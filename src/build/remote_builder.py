# src/build/remote_builder.py — v1
"""Build a foreign-architecture image on a remote Linux host over ssh."""

from __future__ import annotations

from imagebuilder.build.base_builder import BaseBuilder, RemoteShellMixin
from imagebuilder.core.models import BuildResult, ImageDefinition


class RemoteLinuxBuilder(RemoteShellMixin, BaseBuilder):
    """Single hop: sync sources, build over ssh, copy the artifact back."""

    async def build(self, image: ImageDefinition) -> BuildResult:
        remote = self._remote
        repo = remote.repo_path
        self._log(f"Building {image.name} on remote builder {remote.host}...")

        self._log("Cleaning up old builds on remote builder...")
        await self._cleanup(
            "Remote",
            self.ssh_argv(
                f"cd {repo} && rm -f result-* 2>/dev/null; "
                "nix-collect-garbage -d 2>/dev/null || true"
            ),
        )

        self._log("Syncing files to remote builder...")
        await self._step(image, "rsync to remote builder", self.rsync_argv())

        self._log("Running nix build on remote builder...")
        target = f".#{image.build_target}"
        await self._step(
            image, "remote nix build",
            self.ssh_argv(f"cd {repo} && nix build {target} --out-link {image.output_link}"),
        )

        self._log("Copying build result from remote builder...")
        local_output = self._prepare_local_output(image)
        remote_artifact = f"{repo}/{image.output_link}/{self._settings.artifact_filename}"
        await self._step(
            image, "copy artifact from remote builder",
            self.scp_from_remote_argv(remote_artifact, local_output),
        )

        return self._result(image, local_output.absolute())
