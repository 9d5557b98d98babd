"""Keep requirements.txt, pyproject.toml and the package imports in step."""

import re
import tomllib
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[2]
_REQUIREMENTS_TXT = _REPO_ROOT / "requirements.txt"
_PYPROJECT_TOML = _REPO_ROOT / "pyproject.toml"
_SRC = _REPO_ROOT / "src" / "aether_guard"

# Import name -> distribution name, where they differ
_IMPORT_TO_DIST = {"pydantic_settings": "pydantic-settings", "pydantic_core": "pydantic"}


def _normalize(name: str) -> str:
    """PEP 503 normalisation."""
    return re.sub(r"[-_.]+", "-", name).lower()


def _dist_name(requirement: str) -> str:
    return _normalize(re.split(r"[><=!~\[;\s]", requirement.strip())[0])


def _requirements() -> dict[str, str]:
    entries: dict[str, str] = {}
    for line in _REQUIREMENTS_TXT.read_text().splitlines():
        line = line.split(" #")[0].strip()
        if line and not line.startswith("#"):
            entries[_dist_name(line)] = line
    return entries


def _pyproject() -> dict:
    return tomllib.loads(_PYPROJECT_TOML.read_text())


def _declared() -> dict[str, str]:
    deps = _pyproject()["project"]["dependencies"]
    return {_dist_name(d): d for d in deps}


def _third_party_imports() -> set[str]:
    pattern = re.compile(
        r"^\s*(?:from\s+(\w+)[\w.]*\s+import\b|import\s+(\w+))", re.MULTILINE
    )
    stdlib = {
        "__future__",
        "asyncio",
        "base64",
        "binascii",
        "collections",
        "contextlib",
        "dataclasses",
        "datetime",
        "enum",
        "functools",
        "logging",
        "os",
        "pathlib",
        "re",
        "sys",
        "types",
        "typing",
        "urllib",
        "uuid",
    }
    found: set[str] = set()
    for path in _SRC.rglob("*.py"):
        for groups in pattern.findall(path.read_text()):
            module = groups[0] or groups[1]
            if module not in stdlib and module != "aether_guard":
                found.add(module)
    return found


class TestRequirementsSync:
    def test_requirements_declared_in_pyproject(self) -> None:
        missing = set(_requirements()) - set(_declared())
        assert not missing, f"In requirements.txt but not pyproject.toml: {sorted(missing)}"

    def test_pyproject_listed_in_requirements(self) -> None:
        missing = set(_declared()) - set(_requirements())
        assert not missing, f"In pyproject.toml but not requirements.txt: {sorted(missing)}"

    def test_version_floors_match(self) -> None:
        requirements = _requirements()
        for name, requirement in _declared().items():
            assert requirements[name].replace(" ", "") == requirement.replace(" ", "")

    def test_every_import_is_declared(self) -> None:
        declared = set(_declared())
        for module in _third_party_imports():
            dist = _normalize(_IMPORT_TO_DIST.get(module, module))
            assert dist in declared, f"{module} is imported but not declared"

    def test_test_extra_has_pytest_asyncio(self) -> None:
        extras = _pyproject()["project"]["optional-dependencies"]
        names = {_dist_name(d) for deps in extras.values() for d in deps}
        assert {"pytest", "pytest-asyncio"} <= names
