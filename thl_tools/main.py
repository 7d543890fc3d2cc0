import argparse
import logging
import os
import re
import sys
import time
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from prompt_toolkit.shortcuts import confirm
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from .check_mbes import check_mbes
from .db_handler import DEFAULT_DB_PATH, DbHandler
from .dialogue_table import DialogueTable
from .errors import InvalidInput, ThlToolsError
from .extract_dialogues import DialogueExtractor, LanguageSource, is_mbe, load_archive
from .fileio import atomic_write
from .generate_checklist import generate_checklist
from .languages import Language
from .mvgl import Extractor, Packer
from .repack_dialogues import DialogueRepacker

logger = logging.getLogger(__name__)
console = Console(stderr=True)

GAME_DATA = "gamedata"


def setup_logging(verbose: int = 0, log_file: Optional[str] = None) -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    level = logging.WARNING if verbose == 0 else logging.INFO if verbose == 1 else logging.DEBUG
    console_handler = RichHandler(console=console, show_path=False)
    console_handler.setLevel(level)
    root.addHandler(console_handler)

    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=100_000_000, backupCount=5, encoding='utf-8')
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)


def parse_languages(value: str) -> List[Language]:
    try:
        languages = [Language.parse(part) for part in value.split(',') if part.strip()]
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None
    if len(set(languages)) != len(languages):
        raise argparse.ArgumentTypeError(f"{value!r} lists a language more than once")
    return languages


def parse_language(value: str) -> Language:
    try:
        return Language.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def parse_regex(value: str):
    try:
        return re.compile(value)
    except re.error as e:
        raise argparse.ArgumentTypeError(f"invalid regex {value!r}: {e}") from None


def build_parser() -> argparse.ArgumentParser:
    default_csv = os.path.join(os.getcwd(), "full-text.csv")
    parser = argparse.ArgumentParser(
        prog='thl-tools',
        description='Extract and repack files from "The Hundred Line -Last Defense Academy-"')
    parser.add_argument('--verbose', '-v', action='count', default=0, help='More output (-vv for debug)')
    parser.add_argument('--log-file', help='Also write a debug log to this file')
    parser.add_argument('--db', default=DEFAULT_DB_PATH, help='Settings database path')
    sub = parser.add_subparsers(dest='action', required=True)

    p = sub.add_parser('extract', help='Extract a .mvgl archive to a folder')
    p.add_argument('source', type=Path, help='The .mvgl archive')
    p.add_argument('destination', type=Path, help='The folder to create')
    p.add_argument('--no-rename-images', action='store_true', help='Keep .img files as .img instead of .dds')
    p.add_argument('--extract-only', type=parse_regex, help='Only extract entries matching this regex')
    p.add_argument('--overwrite', action='store_true', help='Replace existing files in the destination')
    p.add_argument('--no-multi-threading', action='store_true', help='Extract with a single thread')

    p = sub.add_parser('pack', help='Pack a folder into a .mvgl archive')
    p.add_argument('source', type=Path, help='The folder to pack')
    p.add_argument('destination', type=Path, help='The .mvgl archive to create')
    p.add_argument('--overwrite', action='store_true', help='Overwrite the destination if it exists')
    p.add_argument('--no-rename-images', action='store_true', help='Keep .dds files as .dds instead of .img')

    p = sub.add_parser('extract-dialogues', help='Extract every dialogue of the game into a single .csv')
    p.add_argument('languages', type=parse_languages,
                   help="Comma separated languages, e.g. 'japanese,english'")
    p.add_argument('--game-path', type=Path, help='The game directory (defaults to the saved one)')
    p.add_argument('--destination', type=Path, default=Path(default_csv))
    p.add_argument('--overwrite', action='store_true')

    p = sub.add_parser('extract-dialogues-raw', help='Like extract-dialogues, from .mvgl paths')
    p.add_argument('file_paths', type=Path, nargs='+', help='The .mvgl archives, one per column')
    p.add_argument('--destination', type=Path, default=Path(default_csv))
    p.add_argument('--overwrite', action='store_true')

    p = sub.add_parser('repack-dialogues',
                       help='Repack the dialogues directly in the game, keeping timestamped backups')
    p.add_argument('full_text', type=Path, help='The .csv containing all text')
    p.add_argument('reference_language', type=parse_language, help='The language whose files are replaced')
    p.add_argument('--game-path', type=Path, help='The game directory (defaults to the saved one)')
    p.add_argument('--column', help='Column of the .csv to inject (defaults to the last one)')
    p.add_argument('--cleanup', action='store_true', help='Remove the backups afterwards')
    p.add_argument('--yes', '-y', action='store_true', help='Do not ask for confirmation')

    p = sub.add_parser('repack-dialogues-raw', help='Repack all dialogues into a single .mvgl file')
    p.add_argument('full_text', type=Path, help='The .csv containing all text')
    p.add_argument('reference_mvgl', type=Path, help='The .mvgl to use as reference')
    p.add_argument('destination', type=Path, help='The .mvgl to create')
    p.add_argument('--column', help='Column of the .csv to inject (defaults to the last one)')
    p.add_argument('--skip-foreign-rows', action='store_true',
                   help='Ignore rows of .mbe files the reference does not contain instead of failing')
    p.add_argument('--overwrite', action='store_true')

    p = sub.add_parser('check-mbes', help='Check that every .mbe file of a folder parses')
    p.add_argument('path', type=Path)

    p = sub.add_parser('set-game-path', help='Remember the game directory')
    p.add_argument('path', type=Path)

    p = sub.add_parser('restore', help='Put back the files saved by repack-dialogues')
    p.add_argument('reference_language', type=parse_language)
    p.add_argument('--game-path', type=Path, help='The game directory (defaults to the saved one)')

    p = sub.add_parser('checklist', help='Write a markdown checklist of translation progress')
    p.add_argument('full_text', type=Path)
    p.add_argument('--column', help='Translated column (defaults to the last one)')
    p.add_argument('--reference', help='Column the translation is compared with')
    p.add_argument('--output', type=Path, default=Path('checklist.md'))
    return parser


def resolve_game_path(args, db: DbHandler) -> Path:
    game_path = args.game_path
    if game_path is None:
        saved = db.get_game_path()
        if saved is None:
            raise InvalidInput("no game path given and none saved, use --game-path or set-game-path")
        game_path = Path(saved)
    if not game_path.is_dir():
        raise InvalidInput(f"{game_path} should be a valid directory")
    return game_path


def validate_args(args) -> None:
    """Path checks done before any work starts."""
    action = args.action
    if action == 'extract':
        if not args.source.is_file():
            raise InvalidInput(f"{args.source} should be a valid file")
        if args.destination.exists() and not args.destination.is_dir():
            raise InvalidInput(f"{args.destination} should not exist")
    elif action == 'pack':
        if not args.source.is_dir():
            raise InvalidInput(f"{args.source} should be a valid directory")
        if not args.overwrite and args.destination.exists():
            raise InvalidInput(f"{args.destination} should not exist")
    elif action in ('extract-dialogues', 'extract-dialogues-raw'):
        if action == 'extract-dialogues' and not args.languages:
            raise InvalidInput("at least one language should be selected")
        for path in getattr(args, 'file_paths', []):
            if not path.is_file():
                raise InvalidInput(f"{path} should be a valid file")
        if not args.overwrite and args.destination.exists():
            raise InvalidInput(f"{args.destination} should not exist")
    elif action in ('repack-dialogues', 'repack-dialogues-raw', 'checklist'):
        if not args.full_text.is_file():
            raise InvalidInput(f"{args.full_text} should exist")
        if action == 'repack-dialogues-raw':
            if not args.reference_mvgl.is_file():
                raise InvalidInput(f"{args.reference_mvgl} should exist")
            if not args.overwrite and args.destination.exists():
                raise InvalidInput(f"{args.destination} shouldn't exist")
    elif action in ('check-mbes', 'set-game-path'):
        if not args.path.is_dir():
            raise InvalidInput(f"{args.path} should be a valid directory")


def language_source(game_data: Path, language: Language) -> LanguageSource:
    text_file = game_data / language.text_file_name
    patch_file = game_data / language.patch_file_name
    if not text_file.is_file():
        raise InvalidInput(f"{text_file} should exist")
    if not patch_file.is_file():
        logger.warning(f"{patch_file} not found, extracting {language.display_name} without its patch")
        patch_file = None
    return LanguageSource(language.display_name, text_file, patch_file)


def run_extract(args) -> None:
    extractor = Extractor(rename_images=not args.no_rename_images,
                          multi_threading=not args.no_multi_threading,
                          name_matcher=args.extract_only,
                          overwrite=args.overwrite)
    with open(args.source, 'rb') as f:
        written = extractor.extract(f, args.destination)
    console.print(f"Extracted {len(written)} files to {args.destination}")


def run_pack(args) -> None:
    packer = Packer(rename_images=not args.no_rename_images)
    with atomic_write(args.destination) as f:
        entries = packer.pack(args.source, f)
    console.print(f"Packed {len(entries)} files into {args.destination}")


def run_extract_dialogues(args, db: DbHandler) -> None:
    game_data = resolve_game_path(args, db) / GAME_DATA
    sources = [language_source(game_data, language) for language in args.languages]
    write_table(DialogueExtractor().extract_table(sources), args.destination)


def run_extract_dialogues_raw(args) -> None:
    sources = [LanguageSource(f"LANG {i}", path) for i, path in enumerate(args.file_paths)]
    write_table(DialogueExtractor().extract_table(sources), args.destination)


def write_table(table: DialogueTable, destination: Path) -> None:
    with atomic_write(destination) as f:
        f.write(table.to_tabular().encode('utf-8-sig'))
    console.print(f"Wrote {len(table)} rows ({', '.join(table.languages)}) to {destination}")


def run_repack_dialogues_raw(args) -> None:
    table = DialogueTable.load(args.full_text)
    with atomic_write(args.destination) as f:
        report = DialogueRepacker(args.column, skip_foreign=args.skip_foreign_rows).repack(
            table, args.reference_mvgl, f)
    console.print(f"Rebuilt {len(report.edited_entries)} files into {args.destination} "
                  f"({report.size_delta:+d} bytes)")


def run_repack_dialogues(args, db: DbHandler) -> None:
    game_data = resolve_game_path(args, db) / GAME_DATA
    language = args.reference_language
    text_file = game_data / language.text_file_name
    patch_file = game_data / language.patch_file_name
    for path in (text_file, patch_file):
        if not path.is_file():
            raise InvalidInput(f"{path} should exist")

    if not args.yes and not confirm(f"Replace {text_file.name} and {patch_file.name} in {game_data}?"):
        console.print("Aborted")
        return

    table = DialogueTable.load(args.full_text)
    repacker = DialogueRepacker(args.column)
    base = load_archive(text_file)
    patch = load_archive(patch_file)
    # The game reads overridden files from the patch, their base copies stay untouched
    overridden = [name for name in patch.names() if is_mbe(name)]
    base_names = [name for name in base.names() if is_mbe(name)]
    new_patch, _, patch_report = repacker.repack_archive(table, patch, foreign=base_names)
    new_base, _, base_report = repacker.repack_archive(table, base, exclude=overridden, foreign=overridden)

    timestamp = int(time.time())
    for path, data in ((text_file, new_base), (patch_file, new_patch)):
        backup = path.with_name(f"{path.name}.{timestamp}")
        os.replace(path, backup)
        db.add_backup(str(path), str(backup))
        with atomic_write(path) as f:
            f.write(data)
        if args.cleanup:
            os.remove(backup)
            db.remove_backup(str(backup))
        else:
            console.print(f"Saved the original {path.name} as {backup.name}")
    edited = len(base_report.edited_entries) + len(patch_report.edited_entries)
    console.print(f"Rebuilt {edited} files for {language.display_name}")


def run_restore(args, db: DbHandler) -> None:
    game_data = resolve_game_path(args, db) / GAME_DATA
    language = args.reference_language
    restored = 0
    for path in (game_data / language.text_file_name, game_data / language.patch_file_name):
        backup = db.get_latest_backup(str(path))
        if backup is None or not os.path.exists(backup):
            logger.warning(f"no backup recorded for {path}")
            continue
        os.replace(backup, path)
        db.remove_backup(backup)
        console.print(f"Restored {path.name} from {Path(backup).name}")
        restored += 1
    if not restored:
        raise InvalidInput(f"nothing to restore for {language.display_name}")


def run_check_mbes(args) -> int:
    failures = check_mbes(args.path)
    if not failures:
        console.print(f"Every .mbe file under {args.path} parsed")
        return 0
    table = Table(title=f"{len(failures)} broken .mbe files")
    table.add_column("File")
    table.add_column("Offset", justify="right")
    table.add_column("Error")
    for failure in failures:
        table.add_row(str(failure.path), f"0x{failure.offset:x}", str(failure.error))
    console.print(table)
    return 1


def run_checklist(args) -> None:
    table = DialogueTable.load(args.full_text)
    column = args.column or table.languages[-1]
    for name in (column, args.reference):
        if name is not None and name not in table.languages:
            raise InvalidInput(f"the table has no {name!r} column, only {table.languages}")
    with atomic_write(args.output) as f:
        f.write(generate_checklist(table, column, args.reference).encode('utf-8'))
    console.print(f"Checklist generated in {args.output}")


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.log_file)

    try:
        validate_args(args)
        if args.action == 'extract':
            run_extract(args)
        elif args.action == 'pack':
            run_pack(args)
        elif args.action == 'extract-dialogues-raw':
            run_extract_dialogues_raw(args)
        elif args.action == 'repack-dialogues-raw':
            run_repack_dialogues_raw(args)
        elif args.action == 'check-mbes':
            return run_check_mbes(args)
        elif args.action == 'checklist':
            run_checklist(args)
        else:
            with DbHandler(args.db) as db:
                if args.action == 'set-game-path':
                    db.set_game_path(str(args.path.resolve()))
                    console.print(f"Game path set to {args.path.resolve()}")
                elif args.action == 'extract-dialogues':
                    run_extract_dialogues(args, db)
                elif args.action == 'repack-dialogues':
                    run_repack_dialogues(args, db)
                elif args.action == 'restore':
                    run_restore(args, db)
    except ThlToolsError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        if args.verbose > 1:
            traceback.print_exc()
        return 1
    except KeyboardInterrupt:
        console.print("\nInterrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
