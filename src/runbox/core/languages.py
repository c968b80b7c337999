from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

STDIN_FILENAME = "input.txt"


@dataclass(frozen=True)
class LanguageProfile:
    name: str
    image: str
    filename: str
    command: Tuple[str, ...]
    default_timeout_ms: int
    max_timeout_ms: int = 60_000
    compiled: bool = False

    def as_dict(self) -> Dict[str, object]:
        return {
            "image": self.image,
            "filename": self.filename,
            "command": list(self.command),
            "defaultTimeoutMs": self.default_timeout_ms,
            "maxTimeoutMs": self.max_timeout_ms,
            "compiled": self.compiled,
        }


def _sh(script: str) -> Tuple[str, ...]:
    return ("sh", "-c", script)


LANGUAGES: Mapping[str, LanguageProfile] = MappingProxyType({
    "javascript": LanguageProfile(
        "javascript", "node:18-alpine", "code.js", ("node", "code.js"), 30_000),
    "python": LanguageProfile(
        "python", "python:3.11-alpine", "code.py", ("python", "code.py"), 30_000),
    "java": LanguageProfile(
        "java", "openjdk:17-alpine", "Main.java",
        _sh("javac -d /tmp Main.java && java -cp /tmp Main"), 45_000, compiled=True),
    "cpp": LanguageProfile(
        "cpp", "gcc:latest", "code.cpp",
        _sh("g++ -O2 -o /tmp/code code.cpp && /tmp/code"), 45_000, compiled=True),
    "c": LanguageProfile(
        "c", "gcc:latest", "code.c",
        _sh("gcc -O2 -o /tmp/code code.c && /tmp/code"), 45_000, compiled=True),
    "go": LanguageProfile(
        "go", "golang:alpine", "main.go",
        _sh("GOCACHE=/tmp/go-cache go run main.go"), 30_000, compiled=True),
    "rust": LanguageProfile(
        "rust", "rust:alpine", "main.rs",
        _sh("rustc -o /tmp/main main.rs && /tmp/main"), 45_000, compiled=True),
})


def supported_languages() -> List[str]:
    return list(LANGUAGES)


def get_profile(language: str) -> Optional[LanguageProfile]:
    return LANGUAGES.get(language)
