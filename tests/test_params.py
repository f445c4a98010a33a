import pytest

from dreamlink.params import (
    CacheDirective,
    ParameterSet,
    ParameterUpdate,
    PipelineConfig,
    PromptEntry,
    StreamStopped,
    decode_message,
    dumps,
    encode_cache_directive,
    encode_parameters,
    encode_update,
)


def test_default_parameter_set_is_complete() -> None:
    payload = encode_parameters(ParameterSet())

    assert payload == {
        "prompts": [{"text": "A beautiful cyberpunk cityscape at night", "weight": 1.0}],
        "prompt_interpolation_method": "slerp",
        "denoising_step_list": [1000, 750, 500, 250],
        "noise_scale": 0.2,
        "manage_cache": True,
        "input_mode": "video",
    }


def test_sparse_update_only_carries_supplied_fields() -> None:
    assert encode_update(ParameterUpdate(noise_scale=0.3)) == {"noise_scale": 0.3}
    assert encode_update(ParameterUpdate(manage_cache=False)) == {"manage_cache": False}
    assert ParameterUpdate().is_empty
    assert not ParameterUpdate(manage_cache=False).is_empty


@pytest.mark.parametrize("kwargs", [{"noiseScale": 0.3}, {"reset_cache": True}, {"prompt": "neon"}])
def test_sparse_update_rejects_unknown_fields(kwargs) -> None:
    with pytest.raises(ValueError):
        ParameterUpdate(**kwargs)


def test_nested_prompt_fields_are_always_encoded() -> None:
    update = ParameterUpdate(prompts=[PromptEntry(text="harbour at dawn")])

    assert encode_update(update) == {"prompts": [{"text": "harbour at dawn", "weight": 1.0}]}


def test_prompt_update_carries_weight_and_extras() -> None:
    update = ParameterUpdate.for_prompt("neon rain", 0.8, noise_scale=0.6)

    assert encode_update(update) == {
        "prompts": [{"text": "neon rain", "weight": 0.8}],
        "noise_scale": 0.6,
    }
    with pytest.raises(ValueError):
        ParameterUpdate.for_prompt("neon rain", noiseScale=0.6)


def test_noise_scale_is_clamped() -> None:
    assert ParameterUpdate(noise_scale=1.7).noise_scale == 1.0
    assert ParameterUpdate(noise_scale=-0.2).noise_scale == 0.0
    assert ParameterSet(noise_scale=3).noise_scale == 1.0


@pytest.mark.parametrize("steps", [[], [250, 500], [1000, 1000, 500]])
def test_denoising_steps_must_be_strictly_descending(steps) -> None:
    with pytest.raises(ValueError):
        ParameterUpdate(denoising_step_list=steps)
    with pytest.raises(ValueError):
        ParameterSet(denoising_step_list=steps)


def test_parameter_set_requires_a_prompt() -> None:
    with pytest.raises(ValueError):
        ParameterSet(prompts=[])


def test_merged_keeps_untouched_fields() -> None:
    base = ParameterSet(noise_scale=0.4)

    merged = base.merged(ParameterUpdate.for_prompt("desert dunes"))

    assert merged.prompt == "desert dunes"
    assert merged.noise_scale == 0.4
    assert merged.denoising_step_list == [1000, 750, 500, 250]
    assert base.prompt == "A beautiful cyberpunk cityscape at night"


def test_cache_reset_encodes_exactly() -> None:
    assert encode_cache_directive(CacheDirective.reset()) == {"manage_cache": False, "reset_cache": True}
    assert encode_cache_directive(CacheDirective.restore()) == {"manage_cache": True}
    assert dumps(encode_cache_directive(CacheDirective.reset())) == '{"manage_cache":false,"reset_cache":true}'


def test_cache_reset_with_management_is_rejected() -> None:
    with pytest.raises(ValueError):
        CacheDirective(manage_cache=True, reset_cache=True)


def test_pipeline_config_matching() -> None:
    config = PipelineConfig()

    assert config.load_params() == {"height": 320, "width": 576, "seed": 42}
    assert config.matches("longlive", {"height": 320, "width": 576, "seed": 42})
    assert not config.matches("longlive", {"height": 320, "width": 576, "seed": 7})
    assert not config.matches("streamdiffusion", {"height": 320, "width": 576, "seed": 42})
    assert not config.matches("longlive", None)


@pytest.mark.parametrize("kwargs", [{"width": 0}, {"height": -1}, {"seed": -5}, {"pipeline_id": ""}])
def test_pipeline_config_validation(kwargs) -> None:
    with pytest.raises(ValueError):
        PipelineConfig(**kwargs)


def test_decode_stream_stopped() -> None:
    message = decode_message('{"type": "stream_stopped", "error_message": "Out of VRAM"}')

    assert message == StreamStopped(error_message="Out of VRAM")
    assert message.reason == "Out of VRAM"
    assert decode_message(b'{"type": "stream_stopped"}').reason == "Unknown error"


@pytest.mark.parametrize("raw", ['{"type": "stats", "fps": 12}', "not json", "[1, 2]", b"\xff\xfe"])
def test_decode_ignores_unknown_and_malformed(raw) -> None:
    assert decode_message(raw) is None
