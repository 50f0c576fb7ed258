from __future__ import annotations
import re
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..core.errors import ProfileConfigError, UnsupportedLanguage
from ..core.models import LanguageProfile, Naming, Workspace

_IDENTIFIER = re.compile(r"^[A-Za-z_$][\w$]*$")

BUILTIN_PROFILES: Tuple[LanguageProfile, ...] = (
    LanguageProfile(
        id="python",
        source_extension=".py",
        run_command=("python3", "{source}"),
        aliases=("py", "python3"),
    ),
    LanguageProfile(
        id="c",
        source_extension=".c",
        compile_command=("gcc", "{source}", "-o", "{artifact}"),
        run_command=("{artifact}",),
        secondary_artifacts=("*.o",),
    ),
    LanguageProfile(
        id="cpp",
        source_extension=".cpp",
        compile_command=("g++", "-std=c++17", "{source}", "-o", "{artifact}"),
        run_command=("{artifact}",),
        aliases=("c++", "cxx"),
        secondary_artifacts=("*.o",),
    ),
    LanguageProfile(
        id="java",
        source_extension=".java",
        compile_command=("javac", "-d", "{workdir}", "{source}"),
        run_command=("java", "-cp", "{workdir}", "{entry}"),
        naming=Naming.ENTRY_POINT,
        default_entry="Main",
        secondary_artifacts=("*.class",),
    ),
    LanguageProfile(
        id="javascript",
        source_extension=".js",
        run_command=("node", "{source}"),
        aliases=("js", "node"),
    ),
)


def render(template: Iterable[str], workspace: Workspace) -> List[str]:
    """Fill {source}/{artifact}/{workdir}/{entry} into an argv template."""
    values = workspace.placeholders()
    argv = []
    for token in template:
        for key, val in values.items():
            token = token.replace(key, val)
        argv.append(token)
    return argv


def _with_runtimes(profile: LanguageProfile, runtimes: Mapping[str, str]) -> LanguageProfile:
    def _swap(cmd: Optional[Tuple[str, ...]]) -> Optional[Tuple[str, ...]]:
        if not cmd or cmd[0] not in runtimes:
            return cmd
        return (runtimes[cmd[0]],) + tuple(cmd[1:])

    return replace(
        profile,
        compile_command=_swap(profile.compile_command),
        run_command=_swap(profile.run_command),
    )


def profile_from_dict(lang_id: str, raw: Dict[str, Any]) -> LanguageProfile:
    """Build a profile from a `languages:` entry of the YAML config."""
    if not isinstance(raw, dict):
        raise ProfileConfigError(f"language '{lang_id}' must be a mapping")

    def _argv(key: str, required: bool) -> Optional[Tuple[str, ...]]:
        val = raw.get(key)
        if val is None:
            if required:
                raise ProfileConfigError(f"language '{lang_id}' is missing '{key}'")
            return None
        if not isinstance(val, (list, tuple)) or not all(isinstance(x, str) for x in val):
            raise ProfileConfigError(f"language '{lang_id}': '{key}' must be a list of strings")
        if not val:
            raise ProfileConfigError(f"language '{lang_id}': '{key}' is empty")
        return tuple(val)

    ext = str(raw.get("extension", ""))
    if not ext.startswith(".") or "/" in ext:
        raise ProfileConfigError(f"language '{lang_id}': extension must look like '.ext'")
    try:
        naming = Naming(raw.get("naming", Naming.REQUEST_ID.value))
    except ValueError:
        raise ProfileConfigError(f"language '{lang_id}': unknown naming '{raw.get('naming')}'")

    secondary = raw.get("secondary_artifacts") or ()
    if isinstance(secondary, str):
        secondary = (secondary,)
    if any("/" in str(g) or ".." in str(g) for g in secondary):
        raise ProfileConfigError(f"language '{lang_id}': secondary_artifacts must be plain file patterns")
    default_entry = str(raw.get("default_entry", "Main"))
    if not _IDENTIFIER.match(default_entry):
        raise ProfileConfigError(f"language '{lang_id}': default_entry must be an identifier")

    return LanguageProfile(
        id=lang_id.strip().lower(),
        source_extension=ext,
        compile_command=_argv("compile", required=False),
        run_command=_argv("run", required=True),
        naming=naming,
        default_entry=default_entry,
        secondary_artifacts=tuple(str(g) for g in secondary),
        aliases=tuple(str(a).lower() for a in raw.get("aliases") or ()),
    )


class LanguageProfileRegistry:
    """Read-only after construction; shared by every request."""

    def __init__(self, profiles: Iterable[LanguageProfile]):
        by_key: Dict[str, LanguageProfile] = {}
        for p in profiles:
            for key in (p.id, *p.aliases):
                by_key[key.strip().lower()] = p
        self._by_key = by_key

    @classmethod
    def default(
        cls,
        runtimes: Optional[Mapping[str, str]] = None,
        extra: Optional[Mapping[str, Dict[str, Any]]] = None,
    ) -> "LanguageProfileRegistry":
        profiles = {p.id: p for p in BUILTIN_PROFILES}
        for lang_id, raw in (extra or {}).items():
            p = profile_from_dict(lang_id, raw)
            profiles[p.id] = p
        runtimes = runtimes or {}
        return cls(_with_runtimes(p, runtimes) for p in profiles.values())

    def resolve(self, language: str) -> LanguageProfile:
        key = (language or "").strip().lower()
        try:
            return self._by_key[key]
        except KeyError:
            raise UnsupportedLanguage(language) from None

    def languages(self) -> List[str]:
        return sorted({p.id for p in self._by_key.values()})
