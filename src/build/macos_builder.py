# src/build/macos_builder.py — v1
"""Build a foreign-architecture image inside the linux-builder VM of a macOS host.

Two hops: this machine -> macOS host (ssh) -> Linux VM (ssh to
localhost:<vm_port> from the macOS host). Sources are staged on the macOS
host, copied into a per-image directory in the VM, built there, and the
artifact travels back the same way.
"""

from __future__ import annotations

import shlex

from imagebuilder.build.base_builder import BaseBuilder, RemoteShellMixin
from imagebuilder.core.models import BuildResult, ImageDefinition

NIX_FLAGS = (
    "--max-jobs auto "
    "--extra-experimental-features nix-command "
    "--extra-experimental-features flakes"
)


class RemoteMacOSBuilder(RemoteShellMixin, BaseBuilder):
    """Nested build through the macOS host's Linux VM."""

    # --- VM hop ---

    def _vm_ssh(self, command: str) -> str:
        """Command line run on the macOS host that executes command in the VM."""
        remote = self._remote
        return (
            f"ssh -o StrictHostKeyChecking=no -i {remote.vm_key_path} "
            f"-p {remote.vm_port} {remote.vm_user}@localhost {shlex.quote(command)}"
        )

    def _vm_scp_prefix(self) -> str:
        remote = self._remote
        return f"scp -o StrictHostKeyChecking=no -i {remote.vm_key_path} -P {remote.vm_port}"

    def _vm_build_dir(self, image: ImageDefinition) -> str:
        return f"~/build-{image.name}"

    def _staged_artifact(self, image: ImageDefinition) -> str:
        return f"{self._remote.repo_path}/{image.output_link}-{self._settings.artifact_filename}"

    async def build(self, image: ImageDefinition) -> BuildResult:
        remote = self._remote
        repo = remote.repo_path
        vm_dir = self._vm_build_dir(image)
        vm_target = f"{remote.vm_user}@localhost"
        self._log(f"Building {image.name} on macOS host {remote.host} via linux-builder VM...")

        self._log("Cleaning up old builds on macOS host...")
        await self._cleanup(
            "macOS host",
            self.ssh_argv(f"rm -f {repo}/result-*-{self._settings.artifact_filename} 2>/dev/null || true"),
        )
        self._log("Cleaning up old builds in linux-builder VM...")
        await self._cleanup(
            "linux-builder VM",
            self.ssh_argv(self._vm_ssh(
                "rm -rf ~/build-* 2>/dev/null; nix-collect-garbage -d 2>/dev/null || true"
            )),
        )

        self._log("Syncing files to macOS host...")
        await self._step(image, "rsync to macOS host", self.rsync_argv())

        self._log("Copying files to linux-builder VM...")
        await self._step(
            image, "prepare VM build directory",
            self.ssh_argv(self._vm_ssh(f"mkdir -p {vm_dir}")),
        )
        await self._step(
            image, "copy sources into VM",
            self.ssh_argv(
                f"{self._vm_scp_prefix()} -r "
                f"{repo}/flake.nix {repo}/flake.lock {repo}/nix "
                f"{vm_target}:{vm_dir}/"
            ),
        )

        self._log("Running nix build in linux-builder VM...")
        target = f".#{image.build_target}"
        await self._step(
            image, "nix build in VM",
            self.ssh_argv(self._vm_ssh(
                f"cd {vm_dir} && nix build {target} --out-link {image.output_link} {NIX_FLAGS}"
            )),
        )

        self._log("Copying build result from VM to macOS host...")
        staged = self._staged_artifact(image)
        await self._step(
            image, "copy artifact from VM",
            self.ssh_argv(
                f"{self._vm_scp_prefix()} "
                f"{vm_target}:{vm_dir}/{image.output_link}/{self._settings.artifact_filename} "
                f"{staged}"
            ),
        )

        self._log("Copying build result from macOS host...")
        local_output = self._prepare_local_output(image)
        await self._step(
            image, "copy artifact from macOS host",
            self.scp_from_remote_argv(staged, local_output),
        )

        return self._result(image, local_output.absolute())
