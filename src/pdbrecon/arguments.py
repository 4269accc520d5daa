"""arguments.py – Rebuild the compiler command line from the options blob.

The compilation-options record is a NUL-separated list.  Current compilers
write it as ``key\\0value\\0`` pairs (``output-kind``, ``optimization``,
``define`` ...); older tooling wrote ready-made ``/switch`` tokens and
``key:value`` tokens.  Both spellings are folded into one ordered list of
command-line arguments, debug switches are dropped and regenerated from the
PE debug directory, and a fixed baseline of build defaults is prepended.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from pdbrecon.debug_info import DebugClassification
from pdbrecon.errors import Diagnostic

BASELINE_ARGUMENTS: tuple[str, ...] = (
    "/unsafe-",
    "/checked-",
    "/fullpaths",
    "/nostdlib+",
    "/errorreport:prompt",
)

PORTABILITY_POLICIES = {
    0: "NoWarnings",
    1: "SuppressSilverlightPlatform",
    2: "SuppressSilverlightLibrary",
    3: "SuppressAll",
}

_OUTPUT_KINDS = {
    "consoleapplication": "exe",
    "windowsapplication": "winexe",
    "dynamicallylinkedlibrary": "library",
    "netmodule": "module",
    "windowsruntimemetadata": "winmdobj",
    "windowsruntimeapplication": "appcontainerexe",
}

_TRUE_VALUES = frozenset({"true", "1", "release", "+", "yes"})

# Keys recorded for tooling only; they have no command-line counterpart
_METADATA_ONLY_KEYS = frozenset({"language", "version", "compiler-version", "source-file-count"})

_KEY_VALUE_KEYS = frozenset({"default-encoding", "fallback-encoding", "portability-policy"})

_DIRECT_SWITCH_KEYS = {
    "define": "define",
    "nullable": "nullable",
    "langversion": "langversion",
    "language-version": "langversion",
    "platform": "platform",
}

_DEBUG_FLAG_RE = re.compile(r"^/(?:debug(?::.*|\+|-)|embed.*|deterministic\+)$", re.IGNORECASE)
_TFM_MACRO_RE = re.compile(r"\bNET(\d+)_(\d+)\b", re.IGNORECASE)

_KNOWN_KEYS = (
    frozenset({"output-kind", "optimization", "checked", "unsafe", "runtime-version"})
    | _METADATA_ONLY_KEYS
    | _KEY_VALUE_KEYS
    | frozenset(_DIRECT_SWITCH_KEYS)
)


@dataclass
class ReconstructedArguments:
    """Ordered compiler arguments plus the values lifted out of the options."""

    arguments: list[str] = field(default_factory=list)
    target_framework: str | None = None
    default_encoding: str | None = None
    fallback_encoding: str | None = None
    portability_policy: int | None = None
    diagnostics: list[Diagnostic] = field(default_factory=list)


def split_options(raw: bytes | str) -> list[str]:
    """Split the options blob on NUL and drop empty tokens."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    return [token for token in text.split("\x00") if token]


def _flag(name: str, value: str) -> str:
    return f"/{name}{'+' if value.strip().lower() in _TRUE_VALUES else '-'}"


def _translate_pair(key: str, value: str) -> str | None:
    """Command-line form of one ``key``/``value`` pair, or ``None`` to drop it."""
    if key in _METADATA_ONLY_KEYS:
        return None
    if key in _KEY_VALUE_KEYS:
        return f"{key}:{value}"
    if key == "output-kind":
        target = _OUTPUT_KINDS.get(value.strip().lower(), value.strip().lower())
        return f"/target:{target}"
    if key == "optimization":
        return _flag("optimize", value)
    if key in ("checked", "unsafe"):
        return _flag(key, value)
    if key == "runtime-version":
        return f"/runtimemetadataversion:{value}"
    return f"/{_DIRECT_SWITCH_KEYS[key]}:{value}"


def translate_option_pairs(tokens: list[str]) -> list[str]:
    """Fold ``key``/``value`` token pairs into command-line tokens in place.

    Tokens that already look like switches (``/x``) or ``key:value`` pass
    through untouched, as does a known key with nothing after it.
    """
    result: list[str] = []
    i = 0
    while i < len(tokens):
        token = tokens[i]
        key = token.lower()
        if key in _KNOWN_KEYS and i + 1 < len(tokens):
            translated = _translate_pair(key, tokens[i + 1])
            if translated is not None:
                result.append(translated)
            i += 2
            continue
        result.append(token)
        i += 1
    return result


def is_debug_flag(token: str) -> bool:
    return bool(_DEBUG_FLAG_RE.match(token))


def _key_value(token: str, key: str) -> str | None:
    prefix = key + ":"
    if token.lower().startswith(prefix):
        return token[len(prefix) :]
    return None


def target_framework_from_defines(tokens: list[str]) -> str | None:
    """``net8.0`` from the first ``/define:`` holding an ``NETx_y`` macro."""
    for token in tokens:
        if not token.lower().startswith("/define:"):
            continue
        match = _TFM_MACRO_RE.search(token[len("/define:") :])
        if match:
            return f"net{match.group(1)}.{match.group(2)}".lower()
    return None


def reconstruct_arguments(
    options: bytes | str | None,
    classification: DebugClassification,
    *,
    reproducible: bool | None = None,
    pdb_output_path: str | None = None,
) -> ReconstructedArguments:
    """Rebuild the ordered compiler argument list.

    Order: baseline defaults, decoded tokens in their original order,
    ``/portable-policy:N``, then the regenerated debug flags
    (``/deterministic+`` first when the build was reproducible).

    *reproducible* overrides the reproducible marker recorded on
    *classification*.
    """
    result = ReconstructedArguments()
    tokens = translate_option_pairs(split_options(options or b""))

    # key:value tokens are read here but stay in the decoded list
    decoded: list[str] = []
    for token in tokens:
        if is_debug_flag(token):
            continue
        decoded.append(token)
        encoding = _key_value(token, "default-encoding")
        if encoding is not None and result.default_encoding is None:
            result.default_encoding = encoding
        encoding = _key_value(token, "fallback-encoding")
        if encoding is not None and result.fallback_encoding is None:
            result.fallback_encoding = encoding
        policy = _key_value(token, "portability-policy")
        if policy is not None and result.portability_policy is None:
            try:
                result.portability_policy = int(policy)
            except ValueError:
                result.diagnostics.append(
                    Diagnostic("warning", "arguments", f"ignoring portability policy {policy!r}")
                )

    result.target_framework = target_framework_from_defines(decoded)

    arguments = list(BASELINE_ARGUMENTS) + decoded
    if result.portability_policy and result.portability_policy > 0:
        arguments.append(f"/portable-policy:{result.portability_policy}")

    if reproducible is None:
        reproducible = classification.has_reproducible_marker
    if reproducible:
        arguments.append("/deterministic+")
    arguments += classification.to_compiler_flags(pdb_output_path)

    result.arguments = arguments
    if options is None:
        result.diagnostics.append(
            Diagnostic("info", "arguments", "no compilation options recorded; baseline only")
        )
    return result
