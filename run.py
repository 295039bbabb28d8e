import argparse
import logging
import os
import pathlib
import sys

from chip8 import Chip8, ProgramLoadError
from frontend import FrontendConfig, run as run_frontend

logger = logging.getLogger(__name__)

banner = """-------------------------------------------------
ddCh8Py - A Simple CHIP-8 Emulator in Python
-------------------------------------------------
LICENSE: MIT License
Games are free software downloaded from the
Internet, and are included in this repository.
Please note that the games are not created by me,
and I do not claim any ownership over them.
--------------------------------------------------"""

PAGE_SIZE = 7


def paginate(games, page_size=PAGE_SIZE):
    return [games[i:i + page_size] for i in range(0, len(games), page_size)]


def clear_screen():
    os.system('cls' if os.name == 'nt' else 'clear')
    print(banner)


def play(rom_path, config, seed=None):
    """Load and run one ROM. Returns a process exit code."""
    chip8 = Chip8(seed=seed)
    try:
        chip8.load_from_file(rom_path)
    except ProgramLoadError as e:
        logger.error("%s", e)
        return 1
    logger.info("Loading %s...", pathlib.Path(rom_path).name)
    run_frontend(chip8, config)
    return 0


def menu(games_dir, config, seed=None):
    games = sorted(p for p in pathlib.Path(games_dir).glob('*') if p.is_file())
    if not games:
        print(f"No games found in {games_dir}")
        return 1
    # 0: exit, 9: next page, 8: previous page
    pages = paginate(games)
    current_page = 0
    print(banner)
    while True:
        page = pages[current_page]
        print("0. Exit")
        print(f"Page {current_page + 1}/{len(pages)}")
        for i, game in enumerate(page):
            print(f"{i + 1}. {game.name}")
        if current_page > 0:
            print("8. Previous Page")
        if current_page < len(pages) - 1:
            print("9. Next Page")
        choice = input("Select a game to play: ")
        if choice == '0':
            return 0
        elif choice == '8' and current_page > 0:
            current_page -= 1
            clear_screen()
        elif choice == '9' and current_page < len(pages) - 1:
            current_page += 1
            clear_screen()
        elif choice.isdigit() and 1 <= int(choice) <= len(page):
            # Leave a load error on screen.
            if play(page[int(choice) - 1], config, seed=seed) == 0:
                clear_screen()
        else:
            print("Invalid choice. Please try again.")


def build_parser():
    parser = argparse.ArgumentParser(description="ddCh8Py - A Simple CHIP-8 Emulator in Python")
    parser.add_argument("rom", nargs="?", help="ROM to run directly; omit for the game menu")
    parser.add_argument("--games", default="games", help="Directory listed by the game menu. Default: games")
    parser.add_argument("--scale", type=int, default=12, help="Pixel scale factor. Default: 12")
    parser.add_argument("--cpu-hz", type=int, default=500, help="Instructions per second. Default: 500")
    parser.add_argument("--fps", type=int, default=60, help="Frames (and timer ticks) per second. Default: 60")
    parser.add_argument("--volume", type=float, default=0.2, help="Beep volume 0.0-1.0. Default: 0.2")
    parser.add_argument("--lerp", type=float, default=1.0,
                        help="Per-frame pixel colour blend, 1.0 disables smoothing. Default: 1.0")
    parser.add_argument("--seed", type=int, help="Seed for the CXNN random generator")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="[%(levelname)s]:  %(message)s", stream=sys.stdout)

    try:
        config = FrontendConfig(scale=args.scale, cpu_hz=args.cpu_hz, fps=args.fps,
                                volume=args.volume, lerp_rate=args.lerp)
    except ValueError as e:
        parser.error(str(e))
    if args.rom:
        return play(args.rom, config, seed=args.seed)
    return menu(args.games, config, seed=args.seed)


if __name__ == "__main__":
    sys.exit(main())
