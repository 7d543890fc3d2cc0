"""Generate a markdown checklist of translation progress per MBE file."""

from pathlib import PurePosixPath
from typing import Dict, List, Optional

from .dialogue_table import DialogueTable
from .extract_dialogues import entry_of_key


def translation_progress(table: DialogueTable, language: str,
                         reference: Optional[str] = None) -> Dict[str, List[int]]:
    """Per entry, [translated rows, total rows].

    A row counts as translated when its cell is filled and, given a
    reference language, differs from the reference text.
    """
    progress: Dict[str, List[int]] = {}
    translated = table.column(language)
    original = table.column(reference) if reference else {}
    for key, text in translated.items():
        counts = progress.setdefault(entry_of_key(key) or key, [0, 0])
        counts[1] += 1
        if text and text != original.get(key):
            counts[0] += 1
    return progress


def generate_checklist(table: DialogueTable, language: str, reference: Optional[str] = None) -> str:
    """Render the checklist as markdown, grouped by directory."""
    progress = translation_progress(table, language, reference)

    directories: Dict[str, List[str]] = {}
    for entry in progress:
        directories.setdefault(str(PurePosixPath(entry).parent), []).append(entry)

    content = [f"# {language} Translation Checklist\n"]
    content.append("- [ ] Not fully translated")
    content.append("- [x] Every row translated\n")

    for dir_path in sorted(directories):
        content.append("### Root" if dir_path == '.' else f"### {dir_path}")
        content.append("")
        for entry in sorted(directories[dir_path]):
            done, total = progress[entry]
            check = 'x' if done == total else ' '
            content.append(f"- [{check}] `{entry}` ({done}/{total})")
        content.append("")

    total_rows = sum(total for _, total in progress.values())
    translated_rows = sum(done for done, _ in progress.values())
    percentage = (translated_rows / total_rows * 100) if total_rows > 0 else 0

    content.append("## Statistics")
    content.append(f"- Total rows: {total_rows}")
    content.append(f"- Translated: {translated_rows}")
    content.append(f"- Progress: {percentage:.1f}%")
    return '\n'.join(content) + '\n'
