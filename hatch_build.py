"""Custom hatchling build hook that compiles one libpg_query per PostgreSQL version and bundles the results."""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Any

from hatchling.builders.hooks.plugin.interface import BuildHookInterface

_LIB_NAMES = {
    "Linux": ("libpg_query.so", "libpg_query-{version}.so"),
    "Darwin": ("libpg_query.dylib", "libpg_query-{version}.dylib"),
}

_VERSIONS = (15, 16, 17)


class CustomBuildHook(BuildHookInterface):
    """Build hook that compiles the vendored libpg_query releases and their protobuf schemas into the wheel.

    Each supported major version is vendored as ``vendor/libpg_query-<major>`` (a libpg_query checkout on the
    ``<major>-latest`` branch).
    """

    PLUGIN_NAME = "custom"

    def initialize(self, version: str, build_data: dict[str, Any]) -> None:
        """Compile every vendored libpg_query and inject the libraries and schemas into the wheel.

        Set ``PGBRIDGE_SKIP_NATIVE_BUILD=1`` to skip compilation (useful in CI where the native libraries are built
        in a separate step).
        """
        if os.environ.get("PGBRIDGE_SKIP_NATIVE_BUILD"):
            self.app.display_warning("PGBRIDGE_SKIP_NATIVE_BUILD is set, skipping native library build.")
            return

        system = platform.system()
        names = _LIB_NAMES.get(system)
        if names is None:
            msg = f"Unsupported platform for the native build: {system}"
            raise RuntimeError(msg)
        built_name, wheel_name = names

        root = Path(self.root)
        bundled = False
        for pg_version in _VERSIONS:
            source = root / "vendor" / f"libpg_query-{pg_version}"
            if not (source / "Makefile").exists():
                self.app.display_warning(
                    f"vendor/libpg_query-{pg_version}/Makefile not found, skipping PostgreSQL {pg_version}. "
                    "Run 'git submodule update --init' to fetch the source."
                )
                continue

            subprocess.check_call(["make", "build_shared"], cwd=source)
            lib_path = source / built_name
            if not lib_path.exists():
                msg = f"Expected shared library not found after build: {lib_path}"
                raise RuntimeError(msg)
            build_data["force_include"][str(lib_path)] = f"pgbridge/{wheel_name.format(version=pg_version)}"

            schema_path = self._compile_schema(source, pg_version)
            if schema_path is not None:
                build_data["force_include"][str(schema_path)] = f"pgbridge/schemas/pg_query_{pg_version}.binpb"
            bundled = True

        if bundled:
            # Mark as platform-specific wheel (not pure Python).
            build_data["infer_tag"] = True
            build_data["pure_python"] = False

    def _compile_schema(self, source: Path, pg_version: int) -> Path | None:
        """Compile ``pg_query.proto`` into a serialized ``FileDescriptorSet``; ``None`` when protoc is missing."""
        protoc = shutil.which("protoc")
        if protoc is None:
            self.app.display_warning(
                f"protoc not found on PATH, the PostgreSQL {pg_version} schema will not be bundled "
                "(deparse of JSON trees and scan are unavailable without it)."
            )
            return None

        proto_dir = source / "protobuf"
        out_dir = Path(tempfile.mkdtemp(prefix="pgbridge-schema-"))
        out = out_dir / f"pg_query_{pg_version}.binpb"
        subprocess.check_call(
            [
                protoc,
                f"--proto_path={proto_dir}",
                "--include_imports",
                f"--descriptor_set_out={out}",
                "pg_query.proto",
            ],
            cwd=proto_dir,
        )
        return out

    def clean(self, versions: list[str]) -> None:
        """Remove compiled artifacts from the vendor directories."""
        root = Path(self.root)
        for pg_version in _VERSIONS:
            source = root / "vendor" / f"libpg_query-{pg_version}"
            if source.exists():
                subprocess.call(["make", "clean"], cwd=source)
