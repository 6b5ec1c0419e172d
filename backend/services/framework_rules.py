"""Framework detection rules.

Three tables drive detection:
- language -> config file names worth fetching for a repository
- config file -> (token, framework, predicate) rules applied to its content
- framework -> source file extensions that count as usage

A config key starting with "." is a suffix (".csproj" matches "Api.csproj");
any other key must equal the file's base name.

Rules are immutable once built. The default table can be replaced by a
JSON file (FUM_FRAMEWORK_RULES_PATH) with the same shape as
`DEFAULT_RULE_DATA`; predicates are referenced by name.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Any

from app.config import get_settings
from app.exceptions import ValidationError
from app.logging_config import get_logger

logger = get_logger(__name__)

Predicate = Callable[[str, str], bool]


# --- Content predicates: (content, token) -> bool ---


def contains(content: str, token: str) -> bool:
    return token in content


def quoted(content: str, token: str) -> bool:
    return f'"{token}"' in content


def maven_artifact(content: str, token: str) -> bool:
    return f"<artifactId>{token}</artifactId>" in content


def yaml_key(content: str, token: str) -> bool:
    return f"{token}:" in content


def elixir_atom(content: str, token: str) -> bool:
    return f":{token}" in content


def msbuild_reference(content: str, token: str) -> bool:
    return (
        f'<PackageReference Include="{token}"' in content
        or f'<Reference Include="{token}"' in content
        or f'<Project Sdk="{token}"' in content
    )


def _any_marker(*markers: str) -> Predicate:
    """Predicate that ignores the token and looks for structural markers."""

    def predicate(content: str, token: str) -> bool:
        return any(marker in content for marker in markers)

    return predicate


PREDICATES: Mapping[str, Predicate] = MappingProxyType(
    {
        "contains": contains,
        "quoted": quoted,
        "maven_artifact": maven_artifact,
        "yaml_key": yaml_key,
        "elixir_atom": elixir_atom,
        "msbuild_reference": msbuild_reference,
        "godot_project": _any_marker("[application]", "config_version"),
        "unreal_project": _any_marker('"EngineAssociation"', '"Modules"'),
        "angular_workspace": _any_marker('"projects":'),
        "next_config": _any_marker("module.exports", "export default", "reactStrictMode"),
        "aspnet_settings": _any_marker('"ConnectionStrings"', '"Logging"'),
        "aspnet_program": _any_marker("CreateHostBuilder", "WebApplication.CreateBuilder"),
    }
)


# --- Default table ---

_PYTHON_RULES = [
    ["flask", "Flask", "contains"],
    ["django", "Django", "contains"],
    ["fastapi", "FastAPI", "contains"],
]

DEFAULT_RULE_DATA: dict[str, Any] = {
    "language_configs": {
        "Java": ["pom.xml", "build.gradle"],
        "JavaScript": ["next.config.js", "package.json"],
        "TypeScript": ["next.config.js", "angular.json", "package.json"],
        "Python": ["requirements.txt", "pyproject.toml", "setup.py"],
        "PHP": ["composer.json"],
        "Ruby": ["Gemfile"],
        "Go": ["go.mod"],
        "Rust": ["Cargo.toml"],
        "Swift": ["Package.swift"],
        "Dart": ["pubspec.yaml"],
        "C#": [".csproj", "appsettings.json", "Program.cs"],
        "GDScript": ["project.godot"],
        "C++": [".uproject", "CMakeLists.txt"],
        "Kotlin": ["build.gradle", "pom.xml"],
        "Scala": ["build.sbt"],
        "Elixir": ["mix.exs"],
    },
    "config_rules": {
        "package.json": [
            ["react", "React", "quoted"],
            ["react-native", "React Native", "quoted"],
            ["express", "Express", "quoted"],
            ["next", "NextJs", "quoted"],
            ["vue", "VueJs", "quoted"],
            ["nuxt", "NuxtJs", "quoted"],
            ["nestjs", "NestJS", "quoted"],
            ["@angular/core", "Angular", "quoted"],
            ["svelte", "Svelte", "quoted"],
            ["remix", "Remix", "quoted"],
            ["phaser", "Phaser", "quoted"],
            ["gatsby", "Gatsby", "quoted"],
            ["ember-cli", "EmberJs", "quoted"],
        ],
        "pom.xml": [
            ["spring-boot-starter-web", "Spring Boot", "maven_artifact"],
            ["libgdx", "LibGDX", "maven_artifact"],
            ["ktor-server-core", "Ktor", "maven_artifact"],
        ],
        "build.gradle": [
            ["spring-boot-starter-web", "Spring Boot", "contains"],
            ["com.badlogic.gdx", "LibGDX", "contains"],
            ["io.ktor", "Ktor", "contains"],
        ],
        "requirements.txt": _PYTHON_RULES,
        "pyproject.toml": _PYTHON_RULES,
        "setup.py": _PYTHON_RULES,
        "composer.json": [["laravel/framework", "Laravel", "contains"]],
        "Gemfile": [["rails", "Ruby on Rails", "contains"]],
        "go.mod": [["github.com/gin-gonic/gin", "Gin", "contains"]],
        "Cargo.toml": [
            ["actix-web", "Actix Web", "contains"],
            ["rocket", "Rocket", "contains"],
        ],
        "Package.swift": [["github.com/vapor/vapor", "Vapor", "contains"]],
        "pubspec.yaml": [["flutter", "Flutter", "yaml_key"]],
        ".csproj": [
            ["Microsoft.AspNetCore", "ASPDotNETCore", "msbuild_reference"],
            ["Microsoft.NET.Sdk.Web", "ASPDotNETCore", "msbuild_reference"],
            ["UnityEngine", "Unity", "msbuild_reference"],
        ],
        "appsettings.json": [["aspnetcore", "ASPDotNETCore", "aspnet_settings"]],
        "Program.cs": [["aspnetcore", "ASPDotNETCore", "aspnet_program"]],
        "project.godot": [["godot", "Godot", "godot_project"]],
        ".uproject": [["UnrealEngine", "Unreal Engine", "unreal_project"]],
        "CMakeLists.txt": [["UnrealEngine", "Unreal Engine", "unreal_project"]],
        "build.sbt": [["com.typesafe.play", "Play Framework", "contains"]],
        "mix.exs": [["phoenix", "Phoenix", "elixir_atom"]],
        "angular.json": [["angular", "Angular", "angular_workspace"]],
        "next.config.js": [["next", "NextJs", "next_config"]],
    },
    "framework_extensions": {
        "React": [".jsx", ".tsx"],
        "React Native": [".jsx", ".tsx"],
        "NextJs": [".jsx", ".tsx"],
        "Remix": [".jsx", ".tsx"],
        "Express": [".js", ".ts"],
        "Phaser": [".js", ".ts"],
        "Spring Boot": [".java"],
        "LibGDX": [".java"],
        "VueJs": [".vue"],
        "NuxtJs": [".vue"],
        "NestJS": [".ts"],
        "Angular": [".ts"],
        "Svelte": [".svelte"],
        "Flask": [".py"],
        "Django": [".py"],
        "FastAPI": [".py"],
        "Laravel": [".php"],
        "Ruby on Rails": [".rb"],
        "Gin": [".go"],
        "Actix Web": [".rs"],
        "Rocket": [".rs"],
        "Vapor": [".swift"],
        "Flutter": [".dart"],
        "ASPDotNETCore": [".cs"],
        "Unity": [".cs"],
        "Godot": [".gd", ".cs"],
        "Unreal Engine": [".cpp", ".h"],
        "Ktor": [".kt"],
        "Play Framework": [".scala"],
        "Phoenix": [".ex", ".exs"],
        "Gatsby": [".js", ".tsx"],
        "EmberJs": [".ts", ".js"],
    },
    "vendor_directories": [
        "node_modules",
        "bower_components",
        "jspm_packages",
        "vendor",
        "Pods",
        ".venv",
        "venv",
        "site-packages",
    ],
}


def _name_matches(file_name: str, key: str) -> bool:
    if key.startswith("."):
        return file_name.endswith(key) and file_name != key
    return file_name == key


@dataclass(frozen=True)
class DependencyRule:
    """One token check inside a config file."""

    token: str
    framework: str
    predicate: str

    def matches(self, content: str) -> bool:
        return PREDICATES[self.predicate](content, self.token)


@dataclass(frozen=True)
class RuleSet:
    """Immutable detection tables. Safe to share between concurrent tasks."""

    language_configs: Mapping[str, tuple[str, ...]]
    config_rules: Mapping[str, tuple[DependencyRule, ...]]
    framework_extensions: Mapping[str, tuple[str, ...]]
    vendor_directories: frozenset[str]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RuleSet:
        try:
            language_configs = {
                language: tuple(configs)
                for language, configs in data["language_configs"].items()
            }
            config_rules = {
                config: tuple(
                    DependencyRule(token=token, framework=framework, predicate=predicate)
                    for token, framework, predicate in rules
                )
                for config, rules in data["config_rules"].items()
            }
            framework_extensions = {
                framework: tuple(extensions)
                for framework, extensions in data["framework_extensions"].items()
            }
            vendor_directories = frozenset(data.get("vendor_directories", ["node_modules"]))
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ValidationError(f"Malformed framework rules: {exc}") from exc

        unknown = {
            rule.predicate
            for rules in config_rules.values()
            for rule in rules
            if rule.predicate not in PREDICATES
        }
        if unknown:
            raise ValidationError(
                "Unknown rule predicates", details={"predicates": sorted(unknown)}
            )

        return cls(
            language_configs=MappingProxyType(language_configs),
            config_rules=MappingProxyType(config_rules),
            framework_extensions=MappingProxyType(framework_extensions),
            vendor_directories=vendor_directories,
        )

    def config_candidates(self, languages: Iterable[str]) -> tuple[str, ...]:
        """Config keys for the given languages, de-duplicated, in order."""
        candidates: dict[str, None] = {}
        for language in languages:
            for config in self.language_configs.get(language, ()):
                candidates.setdefault(config)
        return tuple(candidates)

    def match_config(self, path: str, candidates: Iterable[str]) -> str | None:
        """Return the candidate key that `path` satisfies, if any."""
        file_name = PurePosixPath(path).name
        for key in candidates:
            if _name_matches(file_name, key):
                return key
        return None

    def rules_for(self, path: str) -> tuple[DependencyRule, ...]:
        file_name = PurePosixPath(path).name
        rules = self.config_rules.get(file_name)
        if rules is not None:
            return rules
        for key, rules in self.config_rules.items():
            if key.startswith(".") and _name_matches(file_name, key):
                return rules
        return ()

    def extensions_for(self, framework: str) -> tuple[str, ...]:
        return self.framework_extensions.get(framework, ())

    def counts_as_usage(self, path: str, framework: str) -> bool:
        extensions = self.extensions_for(framework)
        return bool(extensions) and path.endswith(extensions)

    def is_vendored(self, path: str) -> bool:
        """True when any directory on the path is a vendored dependency tree."""
        return any(part in self.vendor_directories for part in PurePosixPath(path).parts[:-1])

    def to_dict(self) -> dict[str, Any]:
        return {
            "language_configs": {k: list(v) for k, v in self.language_configs.items()},
            "config_rules": {
                k: [[r.token, r.framework, r.predicate] for r in v]
                for k, v in self.config_rules.items()
            },
            "framework_extensions": {k: list(v) for k, v in self.framework_extensions.items()},
            "vendor_directories": sorted(self.vendor_directories),
        }


def load_ruleset(path: str | Path) -> RuleSet:
    """Load a RuleSet from a JSON file."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValidationError(f"Cannot read framework rules from {path}") from exc
    ruleset = RuleSet.from_dict(data)
    logger.info(
        "framework_rules_loaded",
        path=str(path),
        config_files=len(ruleset.config_rules),
        frameworks=len(ruleset.framework_extensions),
    )
    return ruleset


DEFAULT_RULES = RuleSet.from_dict(DEFAULT_RULE_DATA)


@lru_cache
def get_ruleset() -> RuleSet:
    """Configured RuleSet, loaded once per process."""
    path = get_settings().framework_rules_path
    if path:
        return load_ruleset(path)
    return DEFAULT_RULES
