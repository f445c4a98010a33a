from dreamlink.params import encode_update
from dreamlink.prompts import PromptComposer


class FakeClock:
    def __init__(self) -> None:
        self.value = 100.0

    def now(self) -> float:
        return self.value

    def advance(self, delta: float) -> None:
        self.value += delta


class RecordingSession:
    def __init__(self) -> None:
        self.updates = []
        self.noise = []
        self.resets = 0

    def update_parameters(self, update) -> bool:
        self.updates.append(encode_update(update))
        return True

    def set_noise_scale(self, value: float) -> bool:
        self.noise.append(value)
        return True

    def reset_cache(self) -> bool:
        self.resets += 1
        return True


def _composer(**kwargs):
    session = RecordingSession()
    clock = FakeClock()
    composer = PromptComposer(session, clock=clock.now, **kwargs)
    return composer, session, clock


def test_prompt_joins_non_empty_parts() -> None:
    composer, _, _ = _composer(prefix="A 3D animated scene with ", action="robot dancing", suffix="")

    assert composer.prompt == "A 3D animated scene with robot dancing"


def test_set_action_pushes_prompt_and_noise_together() -> None:
    composer, session, _ = _composer(noise_scale=0.35, weight=0.9)

    assert composer.set_action("person waving") is True

    assert session.updates == [
        {
            "prompts": [{"text": "A 3D animated scene with person waving", "weight": 0.9}],
            "noise_scale": 0.35,
        }
    ]


def test_cooldown_defers_rapid_updates() -> None:
    composer, session, clock = _composer(cooldown=0.5)

    composer.set_prefix("A watercolor painting of")
    composer.set_suffix("at sunset")
    assert len(session.updates) == 1
    assert composer.pending

    assert composer.flush_pending() is False
    clock.advance(0.6)
    assert composer.flush_pending() is True
    assert not composer.pending
    assert session.updates[-1]["prompts"][0]["text"] == "A watercolor painting of person standing at sunset"


def test_set_action_bypasses_cooldown() -> None:
    composer, session, _ = _composer(cooldown=10.0)

    composer.set_prefix("A sketch of")
    composer.set_action("cat sleeping")

    assert [update["prompts"][0]["text"] for update in session.updates] == [
        "A sketch of person standing",
        "A sketch of cat sleeping",
    ]


def test_auto_update_off_only_recomposes() -> None:
    composer, session, _ = _composer(auto_update=False)

    assert composer.set_suffix("in the rain") is False
    assert session.updates == []
    assert composer.prompt.endswith("in the rain")


def test_noise_override_takes_priority() -> None:
    composer, session, clock = _composer(noise_scale=0.2)

    composer.set_noise_override(0.8)
    assert composer.has_noise_override
    composer.set_noise_scale(0.3)
    assert session.noise == [0.8, 0.8]
    assert composer.effective_noise_scale == 0.8

    composer.set_action("person jumping")
    assert session.updates[-1]["noise_scale"] == 0.8

    assert composer.clear_noise_override() is True
    assert composer.clear_noise_override() is False
    assert session.noise[-1] == 0.3


def test_reset_defaults_restores_startup_parts() -> None:
    composer, session, clock = _composer(prefix="Start", suffix="end")

    composer.set_prefix("Other")
    clock.advance(1.0)
    composer.set_suffix("tail")
    clock.advance(1.0)
    composer.reset_defaults()

    assert composer.prompt == "Start person standing end"
    assert session.updates[-1]["prompts"][0]["text"] == "Start person standing end"


def test_empty_prompt_is_not_sent() -> None:
    composer, session, _ = _composer(prefix="", suffix="")

    assert composer.set_action("   ") is False
    assert session.updates == []


def test_reset_cache_delegates() -> None:
    composer, session, _ = _composer()

    assert composer.reset_cache() is True
    assert session.resets == 1
