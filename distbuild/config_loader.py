"""Configuration loading and validation for distbuild."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence
import os
import shlex
import time

from core.config_loader import (
    collect_config_files,
    load_config_file,
    merge_mappings,
    normalize_bool,
    normalize_int,
    normalize_string_list,
    section,
)
from core.template import TemplateError, TemplateResolver

from .errors import ConfigurationError

DEFAULT_VERSION_TOKEN = "@@VERSION@@"

DEFAULT_STAMP_SUFFIXES = [".xml", ".html", ".htm", ".properties", ".txt", ".json", ".js", ".css", ".md"]

ROLE_ORDER = ["library", "configuration", "extension", "web", "documentation", "logs"]

DEFAULT_ROLE_DIRECTORIES: Dict[str, List[str]] = {
    "library": ["server-lib", "client-lib", "manager-lib", "cli-lib"],
    "configuration": ["conf"],
    "extension": ["extensions"],
    "web": ["public_html", "public_api_html", "webapps"],
    "documentation": ["docs"],
    "logs": ["logs"],
}

DUPLICATE_POLICIES = ("overwrite", "skip", "warn", "fail")

DEFAULT_DUPLICATE_POLICIES: Dict[str, str] = {
    "library": "warn",
    "configuration": "overwrite",
    "extension": "fail",
    "web": "overwrite",
    "documentation": "overwrite",
    "logs": "overwrite",
}


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _command_list(value: Any, *, field_name: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return shlex.split(value)
    return normalize_string_list(value, field_name=field_name)


def _string_table(value: Any, *, field_name: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise TypeError(f"{field_name} must be a table")
    return {str(key): str(item) for key, item in value.items()}


def resolve_build_timestamp(value: Any = None) -> int:
    """Pick the build timestamp: explicit value, then ``SOURCE_DATE_EPOCH``, then now."""

    if value is not None:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError("distribution.build_timestamp must be an integer (seconds since the epoch)")
        return value
    env_value = os.environ.get("SOURCE_DATE_EPOCH")
    if env_value:
        try:
            return int(env_value)
        except ValueError as exc:
            raise ConfigurationError(f"SOURCE_DATE_EPOCH must be an integer, got '{env_value}'") from exc
    return int(time.time())


@dataclass(slots=True)
class GlobalConfig:
    product: str
    version: str
    version_token: str = DEFAULT_VERSION_TOKEN
    build_dir: str = "build"
    staging_dir: str = "build/staging"
    output_dir: str = "build/dist"
    workers: int = 1
    log_level: str = "info"
    log_file: str | None = None
    strict_libraries: bool = False
    state_file: str | None = "build/.distbuild-state.json"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GlobalConfig":
        global_section = section(data, "global")
        product = _optional_str(global_section.get("product"))
        version = _optional_str(global_section.get("version"))
        if not product:
            raise ConfigurationError("global.product is required")
        if not version:
            raise ConfigurationError("global.version is required")
        build_dir = str(global_section.get("build_dir", "build"))
        state_file = global_section.get("state_file", f"{build_dir}/.distbuild-state.json")
        return cls(
            product=product,
            version=version,
            version_token=str(global_section.get("version_token", DEFAULT_VERSION_TOKEN)),
            build_dir=build_dir,
            staging_dir=str(global_section.get("staging_dir", f"{build_dir}/staging")),
            output_dir=str(global_section.get("output_dir", f"{build_dir}/dist")),
            workers=normalize_int(
                global_section.get("workers"),
                field_name="global.workers",
                default=os.cpu_count() or 1,
                minimum=1,
            ),
            log_level=str(global_section.get("log_level", "info")),
            log_file=_optional_str(global_section.get("log_file")),
            strict_libraries=normalize_bool(
                global_section.get("strict_libraries"), field_name="global.strict_libraries"
            ),
            state_file=_optional_str(state_file) if state_file is not False else None,
        )


@dataclass(slots=True)
class DistributionSettings:
    formats: List[str] = field(default_factory=lambda: ["gztar", "zip"])
    launcher_patterns: List[str] = field(default_factory=lambda: ["**/*.sh", "**/*launcher*.jar"])
    required_files: List[str] = field(default_factory=list)
    required_dirs: List[str] = field(default_factory=list)
    info_file: str | None = "VERSION.txt"
    extension_archives: bool = True
    build_timestamp: int = 0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DistributionSettings":
        dist = section(data, "distribution")
        defaults = cls()
        formats = normalize_string_list(dist.get("formats"), field_name="distribution.formats")
        patterns = dist.get("launcher_patterns")
        info_file = dist.get("info_file", defaults.info_file)
        return cls(
            formats=formats or defaults.formats,
            launcher_patterns=(
                normalize_string_list(patterns, field_name="distribution.launcher_patterns")
                if patterns is not None
                else defaults.launcher_patterns
            ),
            required_files=normalize_string_list(
                dist.get("required_files"), field_name="distribution.required_files"
            ),
            required_dirs=normalize_string_list(
                dist.get("required_dirs"), field_name="distribution.required_dirs"
            ),
            info_file=_optional_str(info_file) if info_file is not False else None,
            extension_archives=normalize_bool(
                dist.get("extension_archives"),
                field_name="distribution.extension_archives",
                default=True,
            ),
            build_timestamp=resolve_build_timestamp(dist.get("build_timestamp")),
        )


@dataclass(slots=True)
class StampingSettings:
    suffixes: List[str] = field(default_factory=lambda: list(DEFAULT_STAMP_SUFFIXES))
    paths: List[str] = field(default_factory=lambda: ["**"])

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StampingSettings":
        stamping = section(data, "stamping")
        suffixes = normalize_string_list(stamping.get("suffixes"), field_name="stamping.suffixes")
        paths = normalize_string_list(stamping.get("paths"), field_name="stamping.paths")
        normalized = [suffix if suffix.startswith(".") else f".{suffix}" for suffix in suffixes]
        return cls(
            suffixes=[suffix.lower() for suffix in normalized] or list(DEFAULT_STAMP_SUFFIXES),
            paths=paths or ["**"],
        )


@dataclass(slots=True)
class SigningSettings:
    key_file: str | None = None
    required: bool = False
    password_env: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SigningSettings":
        signing = section(data, "signing")
        settings = cls(
            key_file=_optional_str(signing.get("key_file")),
            required=normalize_bool(signing.get("required"), field_name="signing.required"),
            password_env=_optional_str(signing.get("password_env")),
        )
        if settings.required and not settings.key_file:
            raise ConfigurationError("signing.required is set but signing.key_file is missing")
        return settings


@dataclass(slots=True)
class DuplicateRule:
    pattern: str
    policy: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DuplicateRule":
        pattern = _optional_str(data.get("pattern"))
        policy = _optional_str(data.get("policy"))
        if not pattern or not policy:
            raise ConfigurationError("staging.duplicate_rules entries need 'pattern' and 'policy'")
        if policy not in DUPLICATE_POLICIES:
            raise ConfigurationError(
                f"Unknown duplicate policy '{policy}'. Choose from: {', '.join(DUPLICATE_POLICIES)}"
            )
        return cls(pattern=pattern, policy=policy)


@dataclass(slots=True)
class StagingSettings:
    roles: Dict[str, List[str]] = field(default_factory=lambda: {k: list(v) for k, v in DEFAULT_ROLE_DIRECTORIES.items()})
    duplicates: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_DUPLICATE_POLICIES))
    duplicate_rules: List[DuplicateRule] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StagingSettings":
        staging = section(data, "staging")
        settings = cls()

        roles_section = section(staging, "roles")
        for role, directories in roles_section.items():
            if role not in ROLE_ORDER:
                raise ConfigurationError(f"Unknown staging role '{role}'. Choose from: {', '.join(ROLE_ORDER)}")
            settings.roles[role] = normalize_string_list(directories, field_name=f"staging.roles.{role}")

        duplicates_section = section(staging, "duplicates")
        for role, policy in duplicates_section.items():
            if role not in ROLE_ORDER:
                raise ConfigurationError(f"Unknown staging role '{role}' in staging.duplicates")
            if policy not in DUPLICATE_POLICIES:
                raise ConfigurationError(
                    f"Unknown duplicate policy '{policy}' for role '{role}'. "
                    f"Choose from: {', '.join(DUPLICATE_POLICIES)}"
                )
            settings.duplicates[role] = str(policy)

        rules = staging.get("duplicate_rules", [])
        if not isinstance(rules, Sequence) or isinstance(rules, (str, bytes)):
            raise TypeError("[[staging.duplicate_rules]] must be an array of tables")
        for entry in rules:
            if not isinstance(entry, Mapping):
                raise TypeError("[[staging.duplicate_rules]] entries must be tables")
            settings.duplicate_rules.append(DuplicateRule.from_mapping(entry))
        return settings


@dataclass(slots=True)
class CompileSettings:
    command: List[str] = field(default_factory=list)
    cwd: str | None = None
    environment: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, module: str) -> "CompileSettings":
        return cls(
            command=_command_list(data.get("command"), field_name=f"{module}.compile.command"),
            cwd=_optional_str(data.get("cwd")),
            environment=_string_table(data.get("environment"), field_name=f"{module}.compile.environment"),
        )


@dataclass(slots=True)
class PackageSpec:
    """Metadata for one output package of a module."""

    name: str
    destination: str
    main_class: str | None = None
    class_path: List[str] = field(default_factory=list)
    attributes: Dict[str, str] = field(default_factory=dict)
    sources: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any], *, default_dir: str) -> "PackageSpec":
        destination = _optional_str(data.get("destination")) or f"{default_dir}/{name}.jar"
        return cls(
            name=name,
            destination=destination,
            main_class=_optional_str(data.get("main_class")),
            class_path=normalize_string_list(data.get("class_path"), field_name=f"packages.{name}.class_path"),
            attributes=_string_table(data.get("attributes"), field_name=f"packages.{name}.attributes"),
            sources=normalize_string_list(data.get("sources"), field_name=f"packages.{name}.sources"),
        )


@dataclass(slots=True)
class LibrarySettings:
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    destination: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, module: str) -> "LibrarySettings":
        return cls(
            include=normalize_string_list(data.get("include"), field_name=f"{module}.libraries.include"),
            exclude=normalize_string_list(data.get("exclude"), field_name=f"{module}.libraries.exclude"),
            destination=_optional_str(data.get("destination")),
        )


@dataclass(slots=True)
class ResourceTree:
    """A raw directory copied into the staging tree, filtered by globs."""

    source: str
    destination: str
    include: List[str] = field(default_factory=lambda: ["**"])
    exclude: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, module: str) -> "ResourceTree":
        source = _optional_str(data.get("source"))
        if not source:
            raise ConfigurationError(f"Module '{module}': [[resources]] entries need a 'source'")
        destination = _optional_str(data.get("destination")) or "."
        include = normalize_string_list(data.get("include"), field_name=f"{module}.resources.include")
        return cls(
            source=source,
            destination=destination.strip("/") or ".",
            include=include or ["**"],
            exclude=normalize_string_list(data.get("exclude"), field_name=f"{module}.resources.exclude"),
        )


@dataclass(slots=True)
class ModuleDefinition:
    name: str
    source_dir: str
    unit_dir: str
    depends_on: List[str] = field(default_factory=list)
    package_dir: str = "server-lib"
    compile: CompileSettings = field(default_factory=CompileSettings)
    rules: List[Mapping[str, Any]] = field(default_factory=list)
    packages: Dict[str, PackageSpec] = field(default_factory=dict)
    libraries: LibrarySettings = field(default_factory=LibrarySettings)
    resources: List[ResourceTree] = field(default_factory=list)
    template_context: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, product: Mapping[str, Any]) -> "ModuleDefinition":
        module_section = section(data, "module")
        name = _optional_str(module_section.get("name"))
        if not name:
            raise ConfigurationError("module.name is required in module configuration")

        base_context: Dict[str, Any] = {"product": dict(product), "module": {"name": name}}
        resolver = TemplateResolver(base_context)

        def resolve(value: Any, where: str) -> Any:
            try:
                return resolver.resolve(value)
            except TemplateError as exc:
                raise ConfigurationError(f"Module '{name}': {where}: {exc}") from exc

        resolved_module = resolve(dict(module_section), "[module]")
        source_dir = _optional_str(resolved_module.get("source_dir"))
        unit_dir = _optional_str(resolved_module.get("unit_dir"))
        if not source_dir or not unit_dir:
            raise ConfigurationError(f"Module '{name}': module.source_dir and module.unit_dir are required")
        package_dir = _optional_str(resolved_module.get("package_dir")) or "server-lib"

        # Later sections may reference the resolved module paths.
        context: Dict[str, Any] = {
            "product": dict(product),
            "module": {
                "name": name,
                "source_dir": source_dir,
                "unit_dir": unit_dir,
                "package_dir": package_dir,
            },
        }
        resolver = TemplateResolver(context)

        compile_settings = CompileSettings.from_mapping(resolve(dict(section(data, "compile")), "[compile]"), module=name)

        rules_section = data.get("rules", [])
        if not isinstance(rules_section, Sequence) or isinstance(rules_section, (str, bytes)):
            raise ConfigurationError(f"Module '{name}': [[rules]] must be an array of tables")
        rules: List[Mapping[str, Any]] = []
        for entry in rules_section:
            if not isinstance(entry, Mapping):
                raise ConfigurationError(f"Module '{name}': [[rules]] entries must be tables")
            rules.append(dict(entry))

        packages: Dict[str, PackageSpec] = {}
        for package_name, package_data in section(data, "packages").items():
            if not isinstance(package_data, Mapping):
                raise ConfigurationError(f"Module '{name}': [packages.{package_name}] must be a table")
            resolved = resolve(dict(package_data), f"[packages.{package_name}]")
            packages[str(package_name)] = PackageSpec.from_mapping(
                str(package_name), resolved, default_dir=package_dir
            )

        libraries = LibrarySettings.from_mapping(resolve(dict(section(data, "libraries")), "[libraries]"), module=name)

        resources_section = data.get("resources", [])
        if not isinstance(resources_section, Sequence) or isinstance(resources_section, (str, bytes)):
            raise ConfigurationError(f"Module '{name}': [[resources]] must be an array of tables")
        resources = [
            ResourceTree.from_mapping(resolve(dict(entry), "[[resources]]"), module=name)
            for entry in resources_section
            if isinstance(entry, Mapping)
        ]

        return cls(
            name=name,
            source_dir=source_dir,
            unit_dir=unit_dir,
            depends_on=normalize_string_list(resolved_module.get("depends_on"), field_name=f"{name}.depends_on"),
            package_dir=package_dir,
            compile=compile_settings,
            rules=rules,
            packages=packages,
            libraries=libraries,
            resources=resources,
            template_context=context,
        )


@dataclass(slots=True)
class ConfigurationStore:
    root: Path
    config_dir: Path
    global_config: GlobalConfig
    distribution: DistributionSettings
    stamping: StampingSettings
    checksum_algorithm: str
    signing: SigningSettings
    staging: StagingSettings
    modules: Dict[str, ModuleDefinition]
    resources: List[ResourceTree] = field(default_factory=list)

    @classmethod
    def from_directory(
        cls,
        config_dir: Path,
        *,
        root: Path | None = None,
        version_override: str | None = None,
    ) -> "ConfigurationStore":
        """Load ``config.toml`` (or ``.json``/``.yaml``) and every file under ``modules/``.

        ``root`` defaults to the parent of ``config_dir``; relative paths in the
        configuration are resolved against it.
        """

        config_dir = config_dir.expanduser().resolve()
        if not config_dir.is_dir():
            raise FileNotFoundError(f"Configuration directory '{config_dir}' does not exist")
        root = (root or config_dir.parent).expanduser().resolve()

        top_level = collect_config_files(config_dir)
        global_path = top_level.pop("config", None)
        if global_path is None:
            raise FileNotFoundError(f"No config.toml found in '{config_dir}'")
        data: Mapping[str, Any] = load_config_file(global_path)
        override_path = top_level.pop("local", None)
        if override_path is not None:
            data = merge_mappings(data, load_config_file(override_path))

        try:
            global_config = GlobalConfig.from_mapping(data)
            if version_override:
                global_config.version = version_override
            distribution = DistributionSettings.from_mapping(data)
            stamping = StampingSettings.from_mapping(data)
            signing = SigningSettings.from_mapping(data)
            staging = StagingSettings.from_mapping(data)
        except (TypeError, ValueError) as exc:
            if isinstance(exc, ConfigurationError):
                raise
            raise ConfigurationError(f"{global_path.name}: {exc}") from exc

        checksum_algorithm = str(section(data, "checksum").get("algorithm", "sha256")).lower()
        product = {"name": global_config.product, "version": global_config.version}

        resources: List[ResourceTree] = []
        resolver = TemplateResolver({"product": product})
        for entry in data.get("resources", []) or []:
            if not isinstance(entry, Mapping):
                raise ConfigurationError("[[resources]] entries in config.toml must be tables")
            try:
                resources.append(ResourceTree.from_mapping(resolver.resolve(dict(entry)), module="<global>"))
            except TemplateError as exc:
                raise ConfigurationError(f"[[resources]]: {exc}") from exc

        modules: Dict[str, ModuleDefinition] = {}
        for stem, path in sorted(collect_config_files(config_dir / "modules").items()):
            try:
                module = ModuleDefinition.from_mapping(load_config_file(path), product=product)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"{path.name}: {exc}") from exc
            if module.name in modules:
                raise ConfigurationError(f"Module '{module.name}' is defined more than once ({stem})")
            modules[module.name] = module

        return cls(
            root=root,
            config_dir=config_dir,
            global_config=global_config,
            distribution=distribution,
            stamping=stamping,
            checksum_algorithm=checksum_algorithm,
            signing=signing,
            staging=staging,
            modules=modules,
            resources=resources,
        )

    def path(self, value: str) -> Path:
        """Resolve a configured path against the project root."""

        candidate = Path(value).expanduser()
        return candidate if candidate.is_absolute() else self.root / candidate

    @property
    def build_dir(self) -> Path:
        return self.path(self.global_config.build_dir)

    @property
    def staging_dir(self) -> Path:
        return self.path(self.global_config.staging_dir)

    @property
    def output_dir(self) -> Path:
        return self.path(self.global_config.output_dir)

    @property
    def state_file(self) -> Path | None:
        if not self.global_config.state_file:
            return None
        return self.path(self.global_config.state_file)

    def list_modules(self) -> Iterable[str]:
        return self.modules.keys()

    def get_module(self, name: str) -> ModuleDefinition:
        if name not in self.modules:
            available = ", ".join(sorted(self.modules)) or "<none>"
            raise KeyError(f"Module '{name}' not found. Available modules: {available}")
        return self.modules[name]


__all__ = [
    "CompileSettings",
    "ConfigurationStore",
    "DEFAULT_DUPLICATE_POLICIES",
    "DEFAULT_ROLE_DIRECTORIES",
    "DEFAULT_STAMP_SUFFIXES",
    "DEFAULT_VERSION_TOKEN",
    "DUPLICATE_POLICIES",
    "DistributionSettings",
    "DuplicateRule",
    "GlobalConfig",
    "LibrarySettings",
    "ModuleDefinition",
    "PackageSpec",
    "ROLE_ORDER",
    "ResourceTree",
    "SigningSettings",
    "StagingSettings",
    "StampingSettings",
    "resolve_build_timestamp",
]
