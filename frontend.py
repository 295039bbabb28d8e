import array
import logging
import os
import time
from dataclasses import dataclass

os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")
import pygame

from chip8 import DISPLAY_HEIGHT, DISPLAY_WIDTH, MachineState

logger = logging.getLogger(__name__)

KEYMAP = {
    pygame.K_1: 0x1, pygame.K_2: 0x2, pygame.K_3: 0x3, pygame.K_4: 0xC,
    pygame.K_q: 0x4, pygame.K_w: 0x5, pygame.K_e: 0x6, pygame.K_r: 0xD,
    pygame.K_a: 0x7, pygame.K_s: 0x8, pygame.K_d: 0x9, pygame.K_f: 0xE,
    pygame.K_z: 0xA, pygame.K_x: 0x0, pygame.K_c: 0xB, pygame.K_v: 0xF,
}
PAUSE_KEY = pygame.K_p
QUIT_KEY = pygame.K_ESCAPE


@dataclass
class FrontendConfig:
    """Presentation settings. The interpreter core never reads these."""
    scale: int = 12
    fps: int = 60
    cpu_hz: int = 500
    foreground: tuple = (255, 255, 255)
    background: tuple = (0, 0, 0)
    # Fraction of the way each pixel moves toward its target colour per frame.
    lerp_rate: float = 1.0
    volume: float = 0.2
    tone_hz: int = 440
    sample_rate: int = 44100
    caption: str = "CHIP-8"

    def __post_init__(self):
        if not 0.0 < self.lerp_rate <= 1.0:
            raise ValueError(f"lerp_rate must be in (0, 1], got {self.lerp_rate}")

    @property
    def instructions_per_frame(self):
        return max(1, self.cpu_hz // self.fps)


def lerp_colour(current, target, rate):
    if rate >= 1.0:
        return tuple(target)
    return tuple(c + (t - c) * rate for c, t in zip(current, target))


def make_beep_samples(freq=440, duration=0.1, volume=0.2, sample_rate=44100):
    """Signed 16-bit mono square wave."""
    n_samples = int(duration * sample_rate)
    buf = array.array("h")
    amp = int(32767 * max(0.0, min(volume, 1.0)))
    half_period = sample_rate // (2 * freq)
    if half_period <= 0:
        half_period = 1

    v = amp
    count = 0
    for _ in range(n_samples):
        buf.append(v)
        count += 1
        if count >= half_period:
            v = -v
            count = 0
    return buf


class Renderer:
    """Draws the machine's framebuffer into a pygame window."""

    def __init__(self, config, window):
        self.config = config
        self.window = window
        self.surface = pygame.Surface((DISPLAY_WIDTH, DISPLAY_HEIGHT))
        background = tuple(float(c) for c in config.background)
        self.colours = [[background] * DISPLAY_WIDTH for _ in range(DISPLAY_HEIGHT)]
        self.settled = True

    def render(self, chip8):
        if not chip8.draw_flag and self.settled:
            return
        fg, bg, rate = self.config.foreground, self.config.background, self.config.lerp_rate
        settled = True
        for y in range(DISPLAY_HEIGHT):
            row = chip8.display_raw[y]
            colour_row = self.colours[y]
            for x in range(DISPLAY_WIDTH):
                target = fg if row[x] else bg
                colour = lerp_colour(colour_row[x], target, rate)
                if any(abs(c - t) >= 1 for c, t in zip(colour, target)):
                    settled = False
                else:
                    colour = tuple(target)
                colour_row[x] = colour
                self.surface.set_at((x, y), tuple(int(c) for c in colour))
        self.settled = settled
        chip8.draw_flag = False
        scale = self.config.scale
        scaled = pygame.transform.scale(self.surface, (DISPLAY_WIDTH * scale, DISPLAY_HEIGHT * scale))
        self.window.blit(scaled, (0, 0))
        pygame.display.flip()


class Beeper:
    """Plays a looped tone while the audio gate is open."""

    def __init__(self, config):
        samples = make_beep_samples(config.tone_hz, 0.1, config.volume, config.sample_rate)
        self.sound = pygame.mixer.Sound(buffer=samples.tobytes())
        self.channel = pygame.mixer.Channel(0)
        self.beeping = False

    def update(self, gate):
        if gate and not self.beeping:
            self.channel.play(self.sound, loops=-1)
            self.beeping = True
        elif not gate and self.beeping:
            self.channel.stop()
            self.beeping = False


def handle_event(chip8, event):
    """Apply one pygame event to the machine. Returns False when the user quits."""
    if event.type == pygame.QUIT:
        return False
    if event.type == pygame.KEYDOWN:
        if event.key == QUIT_KEY:
            return False
        if event.key == PAUSE_KEY:
            chip8.toggle_pause()
        elif event.key in KEYMAP:
            chip8.set_key(KEYMAP[event.key], True)
    elif event.type == pygame.KEYUP:
        if event.key in KEYMAP:
            chip8.set_key(KEYMAP[event.key], False)
    return True


def run(chip8, config=None):
    """Host loop: input, one batch of instructions, render, timers, audio."""
    config = config or FrontendConfig()
    pygame.mixer.pre_init(config.sample_rate, -16, 1, 512)
    pygame.init()
    pygame.mixer.init()
    pygame.display.set_caption(config.caption)
    window = pygame.display.set_mode((DISPLAY_WIDTH * config.scale, DISPLAY_HEIGHT * config.scale))
    renderer = Renderer(config, window)
    beeper = Beeper(config)
    clock = pygame.time.Clock()
    batch = config.instructions_per_frame
    logger.info("Running at %d instructions/frame, %d fps", batch, config.fps)

    running = True
    started = time.perf_counter()
    try:
        while running:
            for event in pygame.event.get():
                if not handle_event(chip8, event):
                    running = False

            if chip8.state is MachineState.RUNNING:
                chip8.run_batch(batch)
                if chip8.state is MachineState.HALTED:
                    logger.error("Machine halted: %s", chip8.halt_reason)

            renderer.render(chip8)

            if chip8.state is MachineState.RUNNING:
                gate = chip8.tick_timers()
            else:
                gate = False
            beeper.update(gate)

            clock.tick(config.fps)
    finally:
        beeper.update(False)
        pygame.quit()
        logger.debug("Session lasted %.1fs", time.perf_counter() - started)
