"""
Assembly of the runtime image from the final phase of a build descriptor.

Only what the runtime phase explicitly copies reaches the image; the build
workspaces and their tooling are left behind.
"""
import glob
import hashlib
import io
import json
import logging
import os
import shutil
import tarfile
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from ..MODELS.container_image import Image, RunIdentity, is_root_user
from ..MODELS.dockerfile_ast import BuildPhase
from ..errors import AssemblyError

logger = logging.getLogger(__name__)


class ImageAssembler:
    """
    Copies build artifacts into a fresh runtime root, creates the run-as
    account and records the image metadata.
    """
    def __init__(self, default_identity: Optional[RunIdentity] = None):
        """
        :param default_identity: Account used when the runtime phase sets no ``USER``.
        """
        self.default_identity = default_identity or RunIdentity()

    def assemble(self,
                 phase: BuildPhase,
                 rootfs: str,
                 context_dir: str,
                 workspaces: Dict[str, str],
                 labels: Optional[Dict[str, str]] = None) -> Tuple[Image, bytes]:
        """
        Builds the runtime root for ``phase`` and describes it as an image.

        :param phase: The runtime (last) phase of the descriptor.
        :param rootfs: Empty directory to assemble into.
        :param context_dir: Build context, for plain COPY instructions.
        :param workspaces: Finished build workspaces keyed by phase name and index.
        :param labels: Extra labels to record.
        :return: The image and its single artifact layer archive.
        :raises AssemblyError: If an artifact is missing or ambiguous, or the image would run as root.
        """
        os.makedirs(rootfs, exist_ok=True)
        workdir = "/"
        env: Dict[str, str] = {}
        entrypoint: List[str] = []
        cmd: List[str] = []
        exposed: Optional[int] = None
        user: Optional[str] = None
        copied: List[str] = []
        chowns: List[Tuple[str, Optional[str]]] = []
        image_labels = dict(labels or {})

        for inst in phase.instructions:
            name = inst.instruction
            args = inst.arguments

            if name == "WORKDIR":
                workdir = os.path.normpath(os.path.join(workdir, args[0]))
                os.makedirs(self._inside(rootfs, workdir), exist_ok=True)
            elif name == "ENV":
                for arg in args:
                    if '=' in arg:
                        k, v = arg.split('=', 1)
                        env[k] = v.strip('"')
                if len(args) == 2 and '=' not in args[0]:
                    env[args[0]] = args[1]
            elif name in ("COPY", "ADD"):
                dests = self._copy(inst.flags.get("from"), args, rootfs, workdir, context_dir, workspaces, inst.raw)
                copied.extend(dests)
                chowns.extend((d, inst.flags.get("chown")) for d in dests)
            elif name == "EXPOSE":
                exposed = int(args[0].split("/")[0])
            elif name == "USER":
                user = args[0]
            elif name == "ENTRYPOINT":
                entrypoint = list(args) if len(args) > 1 or inst.raw.rstrip().endswith("]") else ["/bin/sh", "-c", args[0]]
            elif name == "CMD":
                cmd = list(args) if len(args) > 1 or inst.raw.rstrip().endswith("]") else ["/bin/sh", "-c", args[0]]
            elif name == "LABEL":
                for arg in args[0].split():
                    if '=' in arg:
                        k, v = arg.split('=', 1)
                        image_labels[k] = v.strip('"')
            elif name == "RUN":
                logger.warning("Skipping RUN in runtime phase, build tooling stays out of the image: %s", inst.raw)

        if not copied:
            raise AssemblyError("runtime phase copies no artifact", step="assemble")

        identity = self._identity(user)
        self._write_account(rootfs, identity)
        for dest, chown in chowns:
            self._transfer_ownership(rootfs, dest, identity, chown)

        layer = self._archive(rootfs, identity, copied)
        layer_digest = f"sha256:{hashlib.sha256(layer).hexdigest()}"

        config = {
            "base_image": phase.base_image,
            "entry_command": entrypoint + cmd,
            "exposed_port": exposed,
            "run_as": identity.model_dump(),
            "working_dir": workdir,
            "env": env,
            "layers": [layer_digest],
        }
        digest = "sha256:" + hashlib.sha256(json.dumps(config, sort_keys=True).encode()).hexdigest()

        image = Image(
            digest=digest,
            base_image=phase.base_image,
            layers=[layer_digest],
            entry_command=entrypoint + cmd,
            exposed_port=exposed,
            run_as_identity=identity,
            working_dir=workdir,
            env=env,
            artifacts=sorted(copied),
            labels=image_labels,
            created=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )
        logger.info("Assembled image %s (%d artifact(s), runs as %s)", image.short_id, len(copied), identity.name)
        return image, layer

    def _inside(self, rootfs: str, path: str) -> str:
        return os.path.join(rootfs, path.lstrip("/"))

    def _copy(self, source_phase: Optional[str], args: List[str], rootfs: str, workdir: str,
              context_dir: str, workspaces: Dict[str, str], raw: str) -> List[str]:
        """
        Copies the sources of one COPY into the runtime root and returns the image paths written.
        """
        if len(args) < 2:
            raise AssemblyError(f"COPY needs a source and a destination: {raw}", step="assemble")
        *sources, dest = args

        if source_phase is not None:
            if source_phase not in workspaces:
                raise AssemblyError(f"unknown build phase '{source_phase}' in: {raw}", step="assemble")
            root = workspaces[source_phase]
        else:
            root = context_dir

        root_abs = os.path.abspath(root)
        for src in sources:
            full = os.path.abspath(os.path.join(root_abs, src.lstrip("/")))
            if full != root_abs and not full.startswith(root_abs + os.sep):
                raise AssemblyError(f"source '{src}' is outside its root in: {raw}", step="assemble")

        matches: List[str] = []
        for src in sources:
            found = sorted(glob.glob(os.path.join(root, src.lstrip("/"))))
            if not found:
                raise AssemblyError(f"no build output matches '{src}' in: {raw}", step="assemble")
            matches.extend(found)

        into_dir = dest.endswith("/")
        if not into_dir and len(matches) != 1:
            raise AssemblyError(
                f"expected exactly one artifact for '{dest}', found {len(matches)} in: {raw}",
                step="assemble",
            )

        dest_path = dest if dest.startswith("/") else os.path.join(workdir, dest)
        written = []
        for match in matches:
            image_path = os.path.join(dest_path, os.path.basename(match)) if into_dir else dest_path
            target = self._inside(rootfs, image_path)
            os.makedirs(os.path.dirname(target), exist_ok=True)
            if os.path.isdir(match):
                shutil.copytree(match, target, dirs_exist_ok=True)
            else:
                shutil.copy2(match, target)
            written.append(os.path.normpath(image_path))
        return written

    def _identity(self, user: Optional[str]) -> RunIdentity:
        if user is None:
            return self.default_identity
        name = user.split(":")[0]
        if is_root_user(name):
            raise AssemblyError("the runtime image must not run as root", step="assemble")
        if name.isdigit():
            return self.default_identity.model_copy(update={"uid": int(name), "gid": int(name)})
        return self.default_identity.model_copy(update={"name": name})

    def _write_account(self, rootfs: str, identity: RunIdentity) -> None:
        """Records the non-login account the image runs as."""
        etc = self._inside(rootfs, "/etc")
        os.makedirs(etc, exist_ok=True)
        with open(os.path.join(etc, "passwd"), "a") as f:
            f.write(identity.passwd_entry() + "\n")
        with open(os.path.join(etc, "group"), "a") as f:
            f.write(f"{identity.name}:x:{identity.gid}:\n")

    def _transfer_ownership(self, rootfs: str, image_path: str, identity: RunIdentity,
                            chown: Optional[str]) -> None:
        uid, gid = identity.uid, identity.gid
        if chown and is_root_user(chown):
            raise AssemblyError(f"artifact {image_path} may not be owned by root", step="assemble")
        if not hasattr(os, "geteuid") or os.geteuid() != 0:
            # Without privilege the ownership only lives in the layer metadata
            return
        target = self._inside(rootfs, image_path)
        paths = [target]
        if os.path.isdir(target):
            for root, dirs, files in os.walk(target):
                paths.extend(os.path.join(root, n) for n in dirs + files)
        for p in paths:
            os.chown(p, uid, gid)

    def _archive(self, rootfs: str, identity: RunIdentity, owned: List[str]) -> bytes:
        """
        Archives the runtime root as one layer. Copied artifacts belong to the
        run-as account, everything else to root.
        """
        owned_rel = [p.lstrip("/") for p in owned]

        def owner(info: tarfile.TarInfo) -> tarfile.TarInfo:
            if any(info.name == p or info.name.startswith(p + "/") for p in owned_rel):
                info.uid, info.gid = identity.uid, identity.gid
                info.uname = info.gname = identity.name
            else:
                info.uid = info.gid = 0
                info.uname = info.gname = "root"
            return info

        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            for name in sorted(os.listdir(rootfs)):
                tar.add(os.path.join(rootfs, name), arcname=name, filter=owner)
        return buf.getvalue()
