"""Tests for the pygame adapter helpers and the launcher."""

import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
os.environ.setdefault("SDL_AUDIODRIVER", "dummy")

import pygame
import pytest

import run
from chip8 import Chip8, MachineState
from frontend import (
    KEYMAP, Beeper, FrontendConfig, Renderer, handle_event, lerp_colour, make_beep_samples,
)


@pytest.fixture
def chip8():
    machine = Chip8()
    machine.load_program(b"\x12\x00")
    return machine


class TestConfig:
    def test_default_batch_size(self):
        assert FrontendConfig().instructions_per_frame == 500 // 60

    def test_batch_size_never_zero(self):
        assert FrontendConfig(cpu_hz=10, fps=60).instructions_per_frame == 1

    @pytest.mark.parametrize("rate", [0.0, -0.5, 1.5])
    def test_lerp_rate_must_be_a_fraction(self, rate):
        with pytest.raises(ValueError):
            FrontendConfig(lerp_rate=rate)

    def test_command_line_rejects_zero_lerp(self):
        with pytest.raises(SystemExit):
            run.main(["--lerp", "0"])


class TestColours:
    def test_full_rate_snaps_to_target(self):
        assert lerp_colour((0, 0, 0), (255, 128, 0), 1.0) == (255, 128, 0)

    def test_partial_rate_moves_part_way(self):
        assert lerp_colour((0, 0, 0), (200, 100, 50), 0.5) == (100.0, 50.0, 25.0)


class TestBeep:
    def test_square_wave_shape(self):
        samples = make_beep_samples(freq=440, duration=0.1, volume=0.2, sample_rate=44100)
        amp = int(32767 * 0.2)
        half_period = 44100 // 880
        assert len(samples) == 4410
        assert samples[0] == amp
        assert samples[half_period - 1] == amp
        assert samples[half_period] == -amp

    def test_volume_is_clamped(self):
        samples = make_beep_samples(volume=3.0)
        assert max(samples) == 32767


class TestInput:
    def test_keymap_covers_every_key_once(self):
        assert sorted(KEYMAP.values()) == list(range(16))

    def test_key_down_and_up(self, chip8):
        assert handle_event(chip8, pygame.event.Event(pygame.KEYDOWN, key=pygame.K_q))
        assert chip8.keys[0x4] == 1
        handle_event(chip8, pygame.event.Event(pygame.KEYUP, key=pygame.K_q))
        assert chip8.keys[0x4] == 0

    def test_pause_key_toggles(self, chip8):
        handle_event(chip8, pygame.event.Event(pygame.KEYDOWN, key=pygame.K_p))
        assert chip8.state is MachineState.PAUSED
        handle_event(chip8, pygame.event.Event(pygame.KEYDOWN, key=pygame.K_p))
        assert chip8.state is MachineState.RUNNING

    def test_quit(self, chip8):
        assert handle_event(chip8, pygame.event.Event(pygame.QUIT)) is False
        assert handle_event(chip8, pygame.event.Event(pygame.KEYDOWN, key=pygame.K_ESCAPE)) is False


class TestLauncher:
    def test_paginate(self):
        pages = run.paginate(list(range(15)))
        assert [len(p) for p in pages] == [7, 7, 1]

    def test_missing_rom_exits_with_error(self, tmp_path):
        assert run.main([str(tmp_path / "nope.ch8")]) == 1

    def test_empty_games_dir(self, tmp_path):
        assert run.menu(tmp_path, FrontendConfig()) == 1

    def test_menu_exit(self, tmp_path, monkeypatch):
        (tmp_path / "PONG").write_bytes(b"\x12\x00")
        monkeypatch.setattr("builtins.input", lambda prompt: "0")
        assert run.menu(tmp_path, FrontendConfig()) == 0

    def test_menu_passes_seed_and_keeps_load_error_visible(self, tmp_path, monkeypatch):
        (tmp_path / "PONG").write_bytes(b"\x12\x00")
        answers = iter(["1", "0"])
        played = []
        cleared = []
        monkeypatch.setattr("builtins.input", lambda prompt: next(answers))
        monkeypatch.setattr(run, "play", lambda rom, config, seed=None: played.append(seed) or 1)
        monkeypatch.setattr(run, "clear_screen", lambda: cleared.append(True))
        assert run.menu(tmp_path, FrontendConfig(), seed=99) == 0
        assert played == [99]
        assert cleared == []


class TestRenderer:
    """Drawing into a headless pygame window."""

    @pytest.fixture
    def window(self):
        pygame.display.init()
        yield pygame.display.set_mode((64, 32))
        pygame.display.quit()

    def test_smoothing_converges_to_foreground(self, window, chip8):
        renderer = Renderer(FrontendConfig(scale=1, lerp_rate=0.5), window)
        chip8.display_raw[0][0] = 1
        renderer.render(chip8)
        assert chip8.draw_flag is False
        assert renderer.colours[0][0] == (127.5, 127.5, 127.5)
        assert not renderer.settled
        for _ in range(20):
            renderer.render(chip8)
        assert renderer.colours[0][0] == (255, 255, 255)
        assert renderer.colours[0][1] == (0.0, 0.0, 0.0)
        assert renderer.settled
        assert tuple(renderer.surface.get_at((0, 0)))[:3] == (255, 255, 255)

    def test_skips_redraw_when_nothing_changed(self, window, chip8):
        renderer = Renderer(FrontendConfig(scale=1), window)
        renderer.render(chip8)
        chip8.display_raw[0][0] = 1
        renderer.render(chip8)
        assert tuple(renderer.surface.get_at((0, 0)))[:3] == (0, 0, 0)


class TestBeeper:
    @pytest.fixture
    def mixer(self):
        try:
            pygame.mixer.init()
        except pygame.error as e:
            pytest.skip(f"no audio device: {e}")
        yield
        pygame.mixer.quit()

    def test_gate_starts_and_stops_tone(self, mixer):
        beeper = Beeper(FrontendConfig())
        beeper.update(True)
        assert beeper.beeping
        beeper.update(True)
        assert beeper.beeping
        beeper.update(False)
        assert not beeper.beeping
