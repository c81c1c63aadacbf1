import dataclasses

import pytest

import skslc


def _resolve(text: str) -> tuple[skslc.ProgramSettings, skslc.CapabilityProfile]:
    settings = skslc.ProgramSettings()
    profile = skslc.detect_shader_settings(text, settings)
    return settings, profile


# ===--- Directive scanning ---=== #


def test_find_settings_directive_keeps_leading_separator() -> None:
    text = "/*#pragma settings Default Sharpen*/\nvoid main() {}\n"

    assert skslc.find_settings_directive(text) == " Default Sharpen"


def test_find_settings_directive_absent_returns_none() -> None:
    assert skslc.find_settings_directive("void main() {}\n") is None


def test_find_settings_directive_without_terminator_returns_none() -> None:
    assert skslc.find_settings_directive("/*#pragma settings FlipY\nvoid main() {}") is None


def test_find_settings_directive_uses_first_occurrence() -> None:
    text = "/*#pragma settings FlipY*/ /*#pragma settings Sharpen*/"

    assert skslc.find_settings_directive(text) == " FlipY"


def test_find_settings_directive_terminator_is_searched_after_introducer() -> None:
    text = "/* leading comment */\n/*#pragma settings NoInline*/"

    assert skslc.find_settings_directive(text) == " NoInline"


# ===--- Capability catalog ---=== #


def test_capability_catalog_is_shared_and_read_only() -> None:
    catalog = skslc.capability_catalog()

    assert skslc.capability_catalog() is catalog
    with pytest.raises(TypeError):
        catalog["Extra"] = catalog["Default"]  # type: ignore[index]


def test_capability_catalog_holds_standalone_default_and_every_keyword_profile() -> None:
    catalog = skslc.capability_catalog()
    profile_keywords = {
        d.profile for d in skslc.SETTINGS_DIRECTIVES if d.profile is not None
    }

    assert skslc.STANDALONE_PROFILE_NAME in catalog
    assert "Default" in catalog
    assert profile_keywords <= set(catalog)
    assert len(profile_keywords) == 23


def test_capability_profiles_are_immutable() -> None:
    profile = skslc.capability_catalog()["Version110"]

    with pytest.raises(dataclasses.FrozenInstanceError):
        profile.version = "#version 300"  # type: ignore[misc]
    assert profile.version == "#version 110"


# ===--- Directive resolution ---=== #


def test_no_directive_yields_baseline_settings_and_standalone_profile() -> None:
    settings, profile = _resolve("void main() { sk_FragColor = half4(1); }\n")

    assert settings == skslc.ProgramSettings()
    assert profile is skslc.standalone_profile()


def test_baseline_settings_match_documented_defaults() -> None:
    settings = skslc.ProgramSettings()

    assert settings.flip_y is False
    assert settings.force_high_precision is False
    assert settings.inline_threshold == skslc.DEFAULT_INLINE_THRESHOLD
    assert settings.sharpen_textures is False
    assert settings.replace_settings is True


def test_directive_order_does_not_change_resulting_settings() -> None:
    first, first_profile = _resolve("/*#pragma settings Sharpen FlipY*/")
    second, second_profile = _resolve("/*#pragma settings FlipY Sharpen*/")

    assert first == second
    assert first.sharpen_textures is True
    assert first.flip_y is True
    assert first_profile is second_profile


@pytest.mark.parametrize(
    ("keyword", "field", "value"),
    [
        ("FlipY", "flip_y", True),
        ("ForceHighPrecision", "force_high_precision", True),
        ("NoInline", "inline_threshold", 0),
        ("InlineThresholdMax", "inline_threshold", skslc.INLINE_THRESHOLD_MAX),
        ("Sharpen", "sharpen_textures", True),
    ],
)
def test_settings_keyword_sets_one_field(keyword: str, field: str, value: object) -> None:
    settings, profile = _resolve(f"/*#pragma settings {keyword}*/")

    assert getattr(settings, field) == value
    assert profile is skslc.standalone_profile()


@pytest.mark.parametrize("name", ["Default", "Version450Core", "CannotUseFragCoord"])
def test_profile_keyword_selects_catalog_entry_by_reference(name: str) -> None:
    settings, profile = _resolve(f"/*#pragma settings {name}*/")

    assert profile is skslc.capability_catalog()[name]
    assert settings == skslc.ProgramSettings()


def test_mixed_profile_and_settings_keywords_in_any_order() -> None:
    settings, profile = _resolve(
        "/*#pragma settings UsesPrecisionModifiers ForceHighPrecision NoInline*/"
    )

    assert profile.name == "UsesPrecisionModifiers"
    assert settings.force_high_precision is True
    assert settings.inline_threshold == 0


def test_unrecognized_keyword_fails_with_remainder_in_message() -> None:
    with pytest.raises(skslc.JobError) as exc_info:
        _resolve("/*#pragma settings Sharpen Bogus*/")

    assert exc_info.value.code == "UNRECOGNIZED_SETTINGS"
    assert exc_info.value.result is skslc.ResultCode.INPUT_ERROR
    assert "Bogus" in exc_info.value.message
    assert "Sharpen" in (exc_info.value.suggestion or "")


def test_unrecognized_keyword_reports_only_unconsumed_text() -> None:
    with pytest.raises(skslc.JobError) as exc_info:
        _resolve("/*#pragma settings Bogus FlipY*/")

    assert exc_info.value.message == "Unrecognized #pragma settings: ' Bogus'"


def test_keyword_must_match_whole_trailing_token() -> None:
    with pytest.raises(skslc.JobError) as exc_info:
        _resolve("/*#pragma settings XFlipY*/")

    assert "XFlipY" in exc_info.value.message


def test_empty_directive_is_a_no_op() -> None:
    settings, profile = _resolve("/*#pragma settings */\nvoid main() {}")

    assert settings == skslc.ProgramSettings()
    assert profile is skslc.standalone_profile()


def test_resolve_settings_keeps_incoming_profile_when_only_settings_change() -> None:
    settings = skslc.ProgramSettings()
    start = skslc.capability_catalog()["Default"]

    profile = skslc.resolve_settings(" FlipY", settings, start)

    assert profile is start
    assert settings.flip_y is True


# ===--- Directive table validation ---=== #


def test_shipped_directive_table_is_unambiguous() -> None:
    skslc.validate_directive_table(skslc.SETTINGS_DIRECTIVES)


@pytest.mark.parametrize(
    "table",
    [
        (
            skslc.SettingsDirective("FlipY", setting="flip_y", value=True),
            skslc.SettingsDirective("FlipY", setting="flip_y", value=False),
        ),
        (skslc.SettingsDirective("Flip Y", setting="flip_y", value=True),),
        (skslc.SettingsDirective("", setting="flip_y", value=True),),
        (skslc.SettingsDirective("Nothing"),),
        (
            skslc.SettingsDirective(
                "Both", profile="Default", setting="flip_y", value=True
            ),
        ),
        (skslc.SettingsDirective("Missing", profile="NoSuchProfile"),),
        (skslc.SettingsDirective("Missing", setting="no_such_field", value=1),),
    ],
)
def test_validate_directive_table_rejects_ambiguous_or_broken_entries(
    table: tuple[skslc.SettingsDirective, ...],
) -> None:
    with pytest.raises(ValueError):
        skslc.validate_directive_table(table)


@pytest.mark.parametrize(
    ("text", "remainder"),
    [
        ("/*#pragma settings FlipY */", "' FlipY '"),
        ("/*#pragma settings FlipY  Sharpen*/", "' FlipY '"),
    ],
)
def test_stray_whitespace_is_reported_verbatim_not_as_a_bad_keyword(
    text: str, remainder: str
) -> None:
    with pytest.raises(skslc.JobError) as exc_info:
        _resolve(text)

    assert exc_info.value.code == "UNRECOGNIZED_SETTINGS"
    assert exc_info.value.message == f"Unrecognized #pragma settings: {remainder}"
