"""Batch command-line driver for the SkSL shader compiler.

Splits a command line into `--`-separated compile jobs, applies any
`/*#pragma settings ...*/` directive embedded in each source, hands the
program to the compiler collaborator for the backend selected by the output
file extension, and exits with the worst result code seen.

Usage:
    SKSLC_COMPILER=mybackend.compiler:make_compiler \\
        skslc in.sksl out.glsl -- GrFoo.fp GrFoo.h --nosettings -- ...
"""

import enum
import importlib
import os
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, fields
from functools import cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Protocol

PROGRAM_NAME = "skslc"
BATCH_SEPARATOR = "--"
COMPILER_ENV_VAR = "SKSLC_COMPILER"
VERBOSE_ENV_VAR = "SKSLC_VERBOSE"


# ===--- Result codes ---=== #


class ResultCode(enum.IntEnum):
    SUCCESS = 0
    COMPILE_ERROR = 1
    INPUT_ERROR = 2
    OUTPUT_ERROR = 3

    @classmethod
    def worst(cls, *codes: "ResultCode") -> "ResultCode":
        """Return the most severe of `codes` (SUCCESS when none are given).

        Severity is position in RESULT_SEVERITY_ORDER, not numeric value, so
        the ordering stays an explicit contract rather than a bit pattern.
        """
        result = cls.SUCCESS
        for code in codes:
            code = cls(code)
            if RESULT_SEVERITY_ORDER.index(code) > RESULT_SEVERITY_ORDER.index(result):
                result = code
        return result


RESULT_SEVERITY_ORDER: tuple[ResultCode, ...] = (
    ResultCode.SUCCESS,
    ResultCode.COMPILE_ERROR,
    ResultCode.INPUT_ERROR,
    ResultCode.OUTPUT_ERROR,
)
"""Result codes from least to most severe.

Compile errors rank lowest because they are expected while running shader
test suites; input and output errors mean the build itself is broken."""


# ===--- Error contracts ---=== #


ERROR_RESULT_CODES: dict[str, ResultCode] = {
    "USAGE": ResultCode.INPUT_ERROR,
    "UNRECOGNIZED_FLAG": ResultCode.INPUT_ERROR,
    "UNKNOWN_INPUT_KIND": ResultCode.INPUT_ERROR,
    "UNREADABLE_INPUT": ResultCode.INPUT_ERROR,
    "UNRECOGNIZED_SETTINGS": ResultCode.INPUT_ERROR,
    "UNKNOWN_OUTPUT_KIND": ResultCode.INPUT_ERROR,
    "OUTPUT_NOT_WRITABLE": ResultCode.OUTPUT_ERROR,
    "OUTPUT_NOT_FINALIZED": ResultCode.OUTPUT_ERROR,
}
VALID_ERROR_CODES = frozenset(ERROR_RESULT_CODES)
USAGE_ERROR_CODES = frozenset({"USAGE", "UNRECOGNIZED_FLAG"})

VALID_CONFIG_ERROR_CODES = {
    "COMPILER_NOT_CONFIGURED",
    "INVALID_COMPILER_REFERENCE",
    "COMPILER_NOT_FOUND",
    "COMPILER_NOT_CALLABLE",
}


class JobError(Exception):
    """Aborts the current job; the batch carries on with the next one."""

    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown job error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion

    @property
    def result(self) -> ResultCode:
        return ERROR_RESULT_CODES[self.code]


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_CONFIG_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


USAGE_TEXT = (
    f"usage: {PROGRAM_NAME} <input> <output> <flags> -- <input2> <output2> <flags> -- ...\n"
    "\n"
    "Allowed flags:\n"
    "--settings:   honor embedded /*#pragma settings*/ comments.\n"
    "--nosettings: ignore /*#pragma settings*/ comments\n"
)


def show_usage(file=None) -> None:
    print(USAGE_TEXT, end="", file=sys.stdout if file is None else file)


def report_job_error(err: JobError) -> None:
    print(f"Error [{err.code}]: {err.message}", file=sys.stderr)
    if err.suggestion:
        print(f"Hint: {err.suggestion}", file=sys.stderr)
    if err.code in USAGE_ERROR_CODES:
        print(file=sys.stderr)
        show_usage(file=sys.stderr)


# ===--- Driver configuration ---=== #


_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class DriverConfig:
    """Process-wide settings read from the environment.

    Attributes:
        compiler: Import reference `package.module:factory` naming the
            compiler collaborator factory, or None when unset.
        verbose: Print one progress line per job to stdout.
    """

    compiler: str | None
    verbose: bool = False


def load_driver_config(environ: Mapping[str, str] | None = None) -> DriverConfig:
    env = os.environ if environ is None else environ
    compiler = env.get(COMPILER_ENV_VAR, "").strip() or None
    verbose = env.get(VERBOSE_ENV_VAR, "").strip().lower() in _TRUTHY
    return DriverConfig(compiler=compiler, verbose=verbose)


def load_compiler_factory(reference: str | None) -> "CompilerFactory":
    """Import the compiler factory named by `reference`.

    Args:
        reference: `package.module:attribute`, where attribute may be a dotted
            path inside the module (e.g. `backend:Compiler.create`).

    Returns:
        The referenced callable.

    Raises:
        ConfigError: The reference is missing or malformed, cannot be
            imported, or does not name a callable.
    """
    hint = f"Set {COMPILER_ENV_VAR}=package.module:factory to a compiler collaborator factory."
    if not reference:
        raise ConfigError(
            "COMPILER_NOT_CONFIGURED",
            "No compiler collaborator configured.",
            hint,
        )
    module_name, sep, attr_path = reference.partition(":")
    if not sep or not module_name or not attr_path:
        raise ConfigError(
            "INVALID_COMPILER_REFERENCE",
            f"Malformed compiler reference: {reference}",
            hint,
        )
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as err:
        raise ConfigError(
            "COMPILER_NOT_FOUND",
            f"Cannot import compiler module '{module_name}': {err}",
            "Check that the module is installed or on PYTHONPATH.",
        ) from err
    for attr in attr_path.split("."):
        try:
            target = getattr(target, attr)
        except AttributeError as err:
            raise ConfigError(
                "COMPILER_NOT_FOUND",
                f"Module '{module_name}' has no attribute '{attr_path}'",
                hint,
            ) from err
    if not callable(target):
        raise ConfigError(
            "COMPILER_NOT_CALLABLE",
            f"Compiler reference {reference} is not callable.",
            hint,
        )
    return target


# ===--- Capability profiles ---=== #


@dataclass(frozen=True)
class CapabilityProfile:
    """Target-environment description handed to the compiler collaborator.

    Attributes:
        name: Catalog key, also the directive keyword that selects it.
        version: GLSL version declaration emitted by text backends.
        quirks: Workarounds the backend must apply for this target.
    """

    name: str
    version: str
    quirks: frozenset[str]


STANDALONE_PROFILE_NAME = "Standalone"
DEFAULT_PROFILE_NAME = "Default"
DEFAULT_GLSL_VERSION = "#version 400"

QUIRK_PROFILE_NAMES: tuple[str, ...] = (
    "AddAndTrueToLoopCondition",
    "BlendModesFailRandomlyForAllZeroVec",
    "CannotUseFractForNegativeValues",
    "CannotUseFragCoord",
    "CannotUseMinAndAbsTogether",
    "EmulateAbsIntFunction",
    "FragCoordsOld",
    "FragCoordsNew",
    "GeometryShaderExtensionString",
    "GeometryShaderSupport",
    "GSInvocationsExtensionString",
    "IncompleteShortIntPrecision",
    "MustGuardDivisionEvenAfterExplicitZeroCheck",
    "MustForceNegatedAtanParamToFloat",
    "NoGSInvocationsSupport",
    "RemovePowWithConstantExponent",
    "RewriteDoWhileLoops",
    "ShaderDerivativeExtensionString",
    "UnfoldShortCircuitAsTernary",
    "UsesPrecisionModifiers",
)

VERSION_PROFILES: dict[str, str] = {
    "Version110": "#version 110",
    "Version450Core": "#version 450 core",
}


@cache
def capability_catalog() -> Mapping[str, CapabilityProfile]:
    """Return the read-only profile catalog, building it on first use.

    Every call returns the same mapping holding the same profile objects, so
    jobs share references and never see a copy.
    """
    profiles = [
        CapabilityProfile(STANDALONE_PROFILE_NAME, DEFAULT_GLSL_VERSION, frozenset()),
        CapabilityProfile(DEFAULT_PROFILE_NAME, DEFAULT_GLSL_VERSION, frozenset()),
    ]
    for name in QUIRK_PROFILE_NAMES:
        profiles.append(CapabilityProfile(name, DEFAULT_GLSL_VERSION, frozenset({name})))
    for name, version in VERSION_PROFILES.items():
        profiles.append(CapabilityProfile(name, version, frozenset()))
    return MappingProxyType({profile.name: profile for profile in profiles})


def standalone_profile() -> CapabilityProfile:
    return capability_catalog()[STANDALONE_PROFILE_NAME]


# ===--- Program settings ---=== #


DEFAULT_INLINE_THRESHOLD = 50
INLINE_THRESHOLD_MAX = 2**31 - 1


@dataclass
class ProgramSettings:
    """Compile-time toggles for one job. Built fresh per job, never shared."""

    flip_y: bool = False
    force_high_precision: bool = False
    inline_threshold: int = DEFAULT_INLINE_THRESHOLD
    sharpen_textures: bool = False
    replace_settings: bool = True


# ===--- Directive scanning ---=== #


PRAGMA_SETTINGS = "/*#pragma settings "
PRAGMA_SETTINGS_END = "*/"
DIRECTIVE_SEPARATOR = " "


def find_settings_directive(text: str) -> str | None:
    """Extract the raw option list of the first `/*#pragma settings ...*/`.

    The introducer's trailing space is kept as the leading separator of the
    returned text so every option, including the first, is preceded by one.

    Returns:
        The text between introducer and terminator, or None when either the
        introducer or its terminator is missing.
    """
    start = text.find(PRAGMA_SETTINGS)
    if start < 0:
        return None
    start += len(PRAGMA_SETTINGS) - len(DIRECTIVE_SEPARATOR)
    end = text.find(PRAGMA_SETTINGS_END, start)
    if end < 0:
        return None
    return text[start:end]


# ===--- Directive resolution ---=== #


@dataclass(frozen=True)
class SettingsDirective:
    """One recognized `#pragma settings` keyword and its effect.

    Exactly one of `profile` (select a catalog profile) or `setting`
    (assign `value` to that ProgramSettings field) is set.
    """

    keyword: str
    profile: str | None = None
    setting: str | None = None
    value: object = None

    def apply(
        self, settings: ProgramSettings, profile: CapabilityProfile
    ) -> CapabilityProfile:
        if self.profile is not None:
            return capability_catalog()[self.profile]
        setattr(settings, self.setting, self.value)
        return profile


SETTINGS_DIRECTIVES: tuple[SettingsDirective, ...] = (
    *(SettingsDirective(name, profile=name) for name in QUIRK_PROFILE_NAMES),
    SettingsDirective(DEFAULT_PROFILE_NAME, profile=DEFAULT_PROFILE_NAME),
    *(SettingsDirective(name, profile=name) for name in VERSION_PROFILES),
    SettingsDirective("FlipY", setting="flip_y", value=True),
    SettingsDirective("ForceHighPrecision", setting="force_high_precision", value=True),
    SettingsDirective("NoInline", setting="inline_threshold", value=0),
    SettingsDirective(
        "InlineThresholdMax", setting="inline_threshold", value=INLINE_THRESHOLD_MAX
    ),
    SettingsDirective("Sharpen", setting="sharpen_textures", value=True),
)
"""Every keyword accepted inside `/*#pragma settings ...*/`.

Keywords are matched as separator-prefixed suffixes of the directive text,
so no entry may be a suffix of another (checked by validate_directive_table)."""


def validate_directive_table(table: Sequence[SettingsDirective]) -> None:
    """Check that suffix matching over `table` is unambiguous.

    Raises:
        ValueError: A keyword is empty, contains whitespace, is duplicated, or
            is a separator-prefixed suffix of another keyword; or an entry has
            no effect, two effects, or names an unknown profile or setting.
    """
    catalog = capability_catalog()
    setting_names = {f.name for f in fields(ProgramSettings)}
    keywords: list[str] = []
    for directive in table:
        keyword = directive.keyword
        if not keyword or any(ch.isspace() for ch in keyword):
            raise ValueError(f"Invalid settings keyword: {keyword!r}")
        if keyword in keywords:
            raise ValueError(f"Duplicate settings keyword: {keyword}")
        if (directive.profile is None) == (directive.setting is None):
            raise ValueError(
                f"Settings keyword {keyword} must select a profile or a setting"
            )
        if directive.profile is not None and directive.profile not in catalog:
            raise ValueError(f"Settings keyword {keyword} names unknown profile")
        if directive.setting is not None and directive.setting not in setting_names:
            raise ValueError(f"Settings keyword {keyword} names unknown setting")
        keywords.append(keyword)

    for keyword in keywords:
        suffix = DIRECTIVE_SEPARATOR + keyword
        for other in keywords:
            if other != keyword and (DIRECTIVE_SEPARATOR + other).endswith(suffix):
                raise ValueError(f"Settings keyword {keyword} is a suffix of {other}")


@cache
def _checked_directives() -> tuple[SettingsDirective, ...]:
    validate_directive_table(SETTINGS_DIRECTIVES)
    return SETTINGS_DIRECTIVES


def resolve_settings(
    directive_text: str,
    settings: ProgramSettings,
    profile: CapabilityProfile,
) -> CapabilityProfile:
    """Apply every keyword in `directive_text` to `settings`.

    Keywords may appear in any order: the whole table is re-scanned, stripping
    trailing keywords, until the text is consumed or a pass removes nothing.

    Args:
        directive_text: Raw option list from find_settings_directive,
            including its leading separator.
        settings: Mutated in place by settings keywords.
        profile: Profile in effect before the directive is applied.

    Returns:
        The profile in effect after the directive is applied.

    Raises:
        JobError: UNRECOGNIZED_SETTINGS, carrying the unconsumed remainder.
    """
    remaining = directive_text
    if remaining in ("", DIRECTIVE_SEPARATOR):
        return profile

    directives = _checked_directives()
    while True:
        starting_length = len(remaining)
        for directive in directives:
            suffix = DIRECTIVE_SEPARATOR + directive.keyword
            if remaining.endswith(suffix):
                remaining = remaining[: -len(suffix)]
                profile = directive.apply(settings, profile)

        if not remaining:
            return profile
        if len(remaining) == starting_length:
            raise JobError(
                "UNRECOGNIZED_SETTINGS",
                f"Unrecognized #pragma settings: {remaining!r}",
                "Recognized settings: "
                + ", ".join(sorted(d.keyword for d in directives))
                + ".",
            )


def detect_shader_settings(text: str, settings: ProgramSettings) -> CapabilityProfile:
    profile = standalone_profile()
    directive_text = find_settings_directive(text)
    if directive_text is None:
        return profile
    return resolve_settings(directive_text, settings, profile)


# ===--- Job descriptors ---=== #


class ProgramKind(enum.Enum):
    VERTEX = "vertex"
    FRAGMENT = "fragment"
    GEOMETRY = "geometry"
    FRAGMENT_PROCESSOR = "fragment-processor"
    PIPELINE_STAGE = "pipeline-stage"


INPUT_KINDS: tuple[tuple[str, ProgramKind], ...] = (
    (".vert", ProgramKind.VERTEX),
    (".frag", ProgramKind.FRAGMENT),
    (".sksl", ProgramKind.FRAGMENT),
    (".geom", ProgramKind.GEOMETRY),
    (".fp", ProgramKind.FRAGMENT_PROCESSOR),
    (".stage", ProgramKind.PIPELINE_STAGE),
)

SETTINGS_FLAGS: dict[str, bool] = {
    "--settings": True,
    "--nosettings": False,
}


@dataclass(frozen=True)
class JobDescriptor:
    input_path: str
    output_path: str
    kind: ProgramKind
    honor_settings: bool = True


def _format_suffix_list(suffixes: Sequence[str]) -> str:
    quoted = [f"'{suffix}'" for suffix in suffixes]
    return ", ".join(quoted[:-1]) + f", or {quoted[-1]}"


def classify_input(path: str) -> ProgramKind:
    for suffix, kind in INPUT_KINDS:
        if path.endswith(suffix):
            return kind
    raise JobError(
        "UNKNOWN_INPUT_KIND",
        "input filename must end in "
        + _format_suffix_list([suffix for suffix, _ in INPUT_KINDS]),
    )


def build_job(args: Sequence[str]) -> JobDescriptor:
    """Build the descriptor for one job slice.

    Args:
        args: `[program, input, output]` or `[program, input, output, flag]`.

    Raises:
        JobError: USAGE for any other length, UNRECOGNIZED_FLAG for a fourth
            argument other than --settings/--nosettings, UNKNOWN_INPUT_KIND for
            an input suffix outside INPUT_KINDS.
    """
    honor_settings = True
    if len(args) == 4:
        flag = args[3]
        if flag not in SETTINGS_FLAGS:
            raise JobError("UNRECOGNIZED_FLAG", f"unrecognized flag: {flag}")
        honor_settings = SETTINGS_FLAGS[flag]
    elif len(args) != 3:
        raise JobError(
            "USAGE",
            f"expected <input> <output> [flag], got {len(args) - 1} argument(s): "
            + " ".join(args[1:]),
        )

    input_path, output_path = args[1], args[2]
    return JobDescriptor(
        input_path=input_path,
        output_path=output_path,
        kind=classify_input(input_path),
        honor_settings=honor_settings,
    )


def read_source(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as err:
        raise JobError("UNREADABLE_INPUT", f"error reading '{path}'", str(err)) from err


def base_name(path: str, prefix: str, suffix: str) -> str:
    """Return the file name of `path` with `prefix` and `suffix` removed.

    `src/gpu/effects/GrFooFragmentProcessor.fp` with ("Gr", ".fp") gives
    "FooFragmentProcessor". Either separator style is accepted. Returns ""
    when the file name does not carry both the prefix and the suffix.
    """
    file_name = path.replace("\\", "/").rsplit("/", 1)[-1]
    if len(file_name) < len(prefix) + len(suffix):
        return ""
    if not (file_name.startswith(prefix) and file_name.endswith(suffix)):
        return ""
    return file_name[len(prefix) : len(file_name) - len(suffix)]


# ===--- Output sink ---=== #


class FileOutputStream:
    """Binary file sink that reports failure through return values.

    Opening failure leaves the stream invalid instead of raising; write
    failures are remembered and reported by close().
    """

    def __init__(self, path: str):
        self.path = path
        self._failed = False
        try:
            self._file = open(path, "wb")
        except OSError:
            self._file = None

    def __enter__(self) -> "FileOutputStream":
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self._file is not None:
            self.close()

    @property
    def is_valid(self) -> bool:
        return self._file is not None

    def write(self, data: bytes) -> None:
        if self._file is None or self._failed:
            return
        try:
            self._file.write(data)
        except OSError:
            self._failed = True

    def write_text(self, text: str) -> None:
        self.write(text.encode("utf-8"))

    def close(self) -> bool:
        if self._file is None:
            return False
        file, self._file = self._file, None
        try:
            file.close()
        except OSError:
            return False
        return not self._failed


# ===--- Compiler collaborator boundary ---=== #


@dataclass(frozen=True)
class LoadedModule:
    symbols: object
    elements: tuple[object, ...]


@dataclass(frozen=True)
class DehydratedModule:
    """Serialized module payload produced by Compiler.dehydrate.

    Attributes:
        data: Opaque serialized bytes.
        offset_prefixes: Annotation text to emit before the byte at each
            offset (typically a newline plus a comment naming the record).
    """

    data: bytes
    offset_prefixes: Mapping[int, str] = field(default_factory=dict)

    def prefix_at_offset(self, offset: int) -> str:
        return self.offset_prefixes.get(offset, "")


class Compiler(Protocol):
    """Operations the driver needs from the shader compiler.

    Failures are reported by returning None/False; `error_text` then holds
    the diagnostics for the most recent failure.
    """

    @property
    def error_text(self) -> str: ...

    def convert_program(
        self, kind: ProgramKind, text: str, settings: ProgramSettings
    ) -> object | None: ...

    def to_spirv(self, program: object, out: FileOutputStream) -> bool: ...

    def to_glsl(self, program: object, out: FileOutputStream) -> bool: ...

    def to_metal(self, program: object, out: FileOutputStream) -> bool: ...

    def to_h(self, program: object, name: str, out: FileOutputStream) -> bool: ...

    def to_cpp(self, program: object, name: str, out: FileOutputStream) -> bool: ...

    def make_module_path(self, input_path: str) -> str: ...

    def load_module(self, kind: ProgramKind, module_path: str) -> LoadedModule | None: ...

    def dehydrate(self, module: LoadedModule) -> DehydratedModule: ...


CompilerFactory = Callable[[CapabilityProfile, bool], Compiler]
"""Creates one compiler per job.

Called with the job's capability profile and `permit_invalid_static_tests`,
which is True only for .h/.cpp code generation."""


# ===--- Output dispatch ---=== #


class OutputKind(enum.Enum):
    SPIRV = "spirv"
    GLSL = "glsl"
    METAL = "metal"
    HEADER = "h"
    SOURCE = "cpp"
    DEHYDRATED = "dehydrated"


OUTPUT_KINDS: tuple[tuple[str, OutputKind], ...] = (
    (".spirv", OutputKind.SPIRV),
    (".glsl", OutputKind.GLSL),
    (".metal", OutputKind.METAL),
    (".h", OutputKind.HEADER),
    (".cpp", OutputKind.SOURCE),
    (".dehydrated.sksl", OutputKind.DEHYDRATED),
)

CODEGEN_OUTPUT_KINDS = frozenset({OutputKind.HEADER, OutputKind.SOURCE})

FP_NAME_PREFIX = "Gr"
FP_NAME_SUFFIX = ".fp"
MODULE_NAME_SUFFIX = ".sksl"
COMPILE_FAILED_BANNER = "### Compilation failed:\n\n"

ProgramEmitter = Callable[[Compiler, object, JobDescriptor, FileOutputStream], bool]


def classify_output(path: str) -> OutputKind:
    for suffix, kind in OUTPUT_KINDS:
        if path.endswith(suffix):
            return kind
    raise JobError(
        "UNKNOWN_OUTPUT_KIND",
        "expected output filename to end with "
        + _format_suffix_list([suffix for suffix, _ in OUTPUT_KINDS]),
    )


def _fp_name(job: JobDescriptor) -> str:
    return base_name(job.input_path, FP_NAME_PREFIX, FP_NAME_SUFFIX)


PROGRAM_EMITTERS: dict[OutputKind, ProgramEmitter] = {
    OutputKind.SPIRV: lambda compiler, program, job, out: compiler.to_spirv(program, out),
    OutputKind.GLSL: lambda compiler, program, job, out: compiler.to_glsl(program, out),
    OutputKind.METAL: lambda compiler, program, job, out: compiler.to_metal(program, out),
    OutputKind.HEADER: lambda compiler, program, job, out: compiler.to_h(
        program, _fp_name(job), out
    ),
    OutputKind.SOURCE: lambda compiler, program, job, out: compiler.to_cpp(
        program, _fp_name(job), out
    ),
}


def format_dehydrated_module(name: str, module: DehydratedModule) -> str:
    """Render a serialized module as a C byte-array literal plus its length."""
    parts = [f"static uint8_t SKSL_INCLUDE_{name}[] = {{"]
    for offset, byte in enumerate(module.data):
        parts.append(f"{module.prefix_at_offset(offset)}{byte},")
    parts.append("};\n")
    parts.append(
        f"static constexpr size_t SKSL_INCLUDE_{name}_LENGTH = "
        f"sizeof(SKSL_INCLUDE_{name});\n"
    )
    return "".join(parts)


def _write_dehydrated(
    compiler: Compiler, job: JobDescriptor, out: FileOutputStream
) -> bool:
    module = compiler.load_module(job.kind, compiler.make_module_path(job.input_path))
    if module is None:
        return False
    dehydrated = compiler.dehydrate(module)
    name = base_name(job.input_path, "", MODULE_NAME_SUFFIX)
    out.write_text(format_dehydrated_module(name, dehydrated))
    return True


def _run_compiler(
    compiler: Compiler,
    output_kind: OutputKind,
    job: JobDescriptor,
    source: str,
    settings: ProgramSettings,
    out: FileOutputStream,
) -> tuple[bool, str]:
    if output_kind is OutputKind.DEHYDRATED:
        ok = _write_dehydrated(compiler, job, out)
    else:
        program = compiler.convert_program(job.kind, source, settings)
        emitter = PROGRAM_EMITTERS[output_kind]
        ok = program is not None and emitter(compiler, program, job, out)
    return ok, "" if ok else compiler.error_text


def write_compile_error(output_path: str, error_text: str) -> None:
    """Replace the artifact at `output_path` with the failure banner.

    The diagnostics are also echoed to stderr so they reach the operator even
    when the artifact is not inspected.
    """
    with FileOutputStream(output_path) as error_stream:
        error_stream.write_text(COMPILE_FAILED_BANNER)
        error_stream.write_text(error_text)
    print(error_text, file=sys.stderr)


def emit_output(
    job: JobDescriptor,
    source: str,
    settings: ProgramSettings,
    profile: CapabilityProfile,
    compiler_factory: CompilerFactory,
) -> ResultCode:
    """Compile `source` for the backend chosen by the job's output suffix.

    Args:
        job: Descriptor from build_job.
        source: Program text read from job.input_path.
        settings: Settings after directive resolution. HEADER/SOURCE outputs
            force replace_settings off.
        profile: Capability profile passed to the compiler factory.
        compiler_factory: Creates the compiler collaborator for this job.

    Returns:
        SUCCESS, or COMPILE_ERROR after the artifact has been rewritten with
        COMPILE_FAILED_BANNER and the compiler diagnostics. An exception
        raised by the compiler is reported the same way, with the exception
        text as the diagnostics.

    Raises:
        JobError: UNKNOWN_OUTPUT_KIND before anything is opened,
            OUTPUT_NOT_WRITABLE when the artifact cannot be created (the
            compiler is never invoked), OUTPUT_NOT_FINALIZED when closing the
            artifact fails after a successful compile.
    """
    output_kind = classify_output(job.output_path)

    with FileOutputStream(job.output_path) as out:
        if not out.is_valid:
            raise JobError("OUTPUT_NOT_WRITABLE", f"error writing '{job.output_path}'")

        codegen = output_kind in CODEGEN_OUTPUT_KINDS
        if codegen:
            settings.replace_settings = False
        try:
            ok, error_text = _run_compiler(
                compiler_factory(profile, codegen), output_kind, job, source, settings, out
            )
        except Exception as err:
            # A crashing collaborator fails only this job.
            ok, error_text = False, f"{type(err).__name__}: {err}\n"

        if not ok:
            out.close()
            write_compile_error(job.output_path, error_text)
            return ResultCode.COMPILE_ERROR

        if not out.close():
            raise JobError(
                "OUTPUT_NOT_FINALIZED", f"error writing '{job.output_path}'"
            )

    return ResultCode.SUCCESS


# ===--- Batch control ---=== #


def process_command(args: Sequence[str], compiler_factory: CompilerFactory) -> ResultCode:
    """Run one job slice end to end and return its result code.

    JobError never escapes: it is reported to stderr and turned into the
    matching result code so the batch can continue.
    """
    try:
        job = build_job(args)
        source = read_source(job.input_path)
        settings = ProgramSettings()
        profile = standalone_profile()
        if job.honor_settings:
            profile = detect_shader_settings(source, settings)
        return emit_output(job, source, settings, profile, compiler_factory)
    except JobError as err:
        report_job_error(err)
        return err.result


def split_batch(argv: Sequence[str]) -> list[list[str]]:
    """Partition argv into job slices at each BATCH_SEPARATOR.

    Every slice starts with argv[0]. Segments with no arguments (leading,
    trailing or repeated separators) produce no job.
    """
    if not argv:
        return []
    program = argv[0]
    jobs: list[list[str]] = []
    current = [program]
    for arg in argv[1:]:
        if arg != BATCH_SEPARATOR:
            current.append(arg)
            continue
        if len(current) > 1:
            jobs.append(current)
        current = [program]
    if len(current) > 1:
        jobs.append(current)
    return jobs


def _describe_job(args: Sequence[str]) -> str:
    if len(args) >= 3:
        return f"{args[1]} -> {args[2]}"
    return " ".join(args[1:])


def run_batch(
    argv: Sequence[str],
    compiler_factory: CompilerFactory,
    verbose: bool = False,
) -> ResultCode:
    """Run every job in argv in order and return the worst result."""
    result = ResultCode.SUCCESS
    for args in split_batch(argv):
        outcome = process_command(args, compiler_factory)
        if verbose:
            print(f"  {_describe_job(args)}: {outcome.name}")
        result = ResultCode.worst(result, outcome)
    return result


# ===--- Main ---=== #


def main(
    argv: Sequence[str] | None = None,
    compiler_factory: CompilerFactory | None = None,
) -> None:
    argv = sys.argv if argv is None else argv
    config = load_driver_config()

    if compiler_factory is None:
        try:
            compiler_factory = load_compiler_factory(config.compiler)
        except ConfigError as err:
            print(f"Config error [{err.code}]: {err.message}", file=sys.stderr)
            if err.suggestion:
                print(f"Hint: {err.suggestion}", file=sys.stderr)
            raise SystemExit(int(ResultCode.INPUT_ERROR)) from err

    result = run_batch(argv, compiler_factory, verbose=config.verbose)
    raise SystemExit(int(result))


if __name__ == "__main__":
    main()
