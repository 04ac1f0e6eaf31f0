"""Hardhat artifact loading with a compiler-settings precondition.

Bytecode compiled under settings other than the pinned ``CompilerSettings``
is refused rather than deployed.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import CompilerSettings
from .exceptions import ArtifactMismatchError, ArtifactNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContractArtifact:
    contract_name: str
    abi: List[Dict[str, Any]]
    bytecode: str
    source_name: str = ""

    def function_inputs(self, name: str) -> Optional[List[str]]:
        """ABI input types of ``name`` (constructor when name is "constructor")."""
        for entry in self.abi:
            kind = entry.get("type")
            if name == "constructor" and kind == "constructor":
                return [_abi_type(i) for i in entry.get("inputs", [])]
            if kind == "function" and entry.get("name") == name:
                return [_abi_type(i) for i in entry.get("inputs", [])]
        if name == "constructor":
            return []
        return None


def _abi_type(param: Dict[str, Any]) -> str:
    """Canonical type string, expanding tuples (structs) into ``(a,b,...)``."""
    kind = param["type"]
    if kind.startswith("tuple"):
        members = ",".join(_abi_type(c) for c in param.get("components", []))
        return f"({members}){kind[len('tuple'):]}"
    return kind


class ArtifactStore:
    """Loads and caches compiled contracts from a Hardhat ``artifacts/`` tree."""

    def __init__(self, root: str | Path, compiler: Optional[CompilerSettings] = None):
        self._root = Path(root)
        self._compiler = compiler or CompilerSettings()
        self._cache: Dict[str, ContractArtifact] = {}

    @property
    def root(self) -> Path:
        return self._root

    def _find(self, contract_name: str) -> Path:
        candidates = [
            p for p in self._root.rglob(f"{contract_name}.json")
            if "build-info" not in p.parts
        ]
        if not candidates:
            raise ArtifactNotFoundError(contract_name, str(self._root))
        # Prefer project sources over node_modules interfaces of the same name
        candidates.sort(key=lambda p: ("@" in str(p), len(p.parts)))
        return candidates[0]

    def load(self, contract_name: str) -> ContractArtifact:
        if contract_name in self._cache:
            return self._cache[contract_name]

        path = self._find(contract_name)
        data = json.loads(path.read_text())
        self._check_build_info(path, contract_name)

        artifact = ContractArtifact(
            contract_name=data.get("contractName", contract_name),
            abi=data["abi"],
            bytecode=data.get("bytecode", "0x"),
            source_name=data.get("sourceName", ""),
        )
        self._cache[contract_name] = artifact
        logger.debug(f"Loaded artifact {contract_name} from {path}")
        return artifact

    def _check_build_info(self, artifact_path: Path, contract_name: str) -> None:
        dbg_path = artifact_path.with_name(f"{contract_name}.dbg.json")
        if not dbg_path.exists():
            return
        build_info_ref = json.loads(dbg_path.read_text()).get("buildInfo")
        if not build_info_ref:
            return
        build_info_path = (dbg_path.parent / build_info_ref).resolve()
        if not build_info_path.exists():
            return

        build_info = json.loads(build_info_path.read_text())
        solc_version = build_info.get("solcVersion")
        optimizer = build_info.get("input", {}).get("settings", {}).get("optimizer", {})

        mismatches = []
        if solc_version != self._compiler.version:
            mismatches.append(f"solc {solc_version} != {self._compiler.version}")
        if bool(optimizer.get("enabled")) != self._compiler.optimizer_enabled:
            mismatches.append(
                f"optimizer enabled {optimizer.get('enabled')} != {self._compiler.optimizer_enabled}"
            )
        if self._compiler.optimizer_enabled and optimizer.get("runs") != self._compiler.optimizer_runs:
            mismatches.append(f"optimizer runs {optimizer.get('runs')} != {self._compiler.optimizer_runs}")

        if mismatches:
            raise ArtifactMismatchError(
                f"Artifact {contract_name} was compiled with different settings: "
                + "; ".join(mismatches),
                details={"contract": contract_name, "mismatches": mismatches},
            )
