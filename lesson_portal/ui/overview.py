"""A Rich-powered console overview of stored lessons."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from rich import box
from rich.columns import Columns
from rich.console import Console, Group
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from ..services.storage import LessonRecord, LessonRepository


def format_file_size(size: int) -> str:
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    for unit in units:
        if value < 1024 or unit == units[-1]:
            return f"{value:.0f} {unit}" if unit == "Bytes" else f"{value:.2f} {unit}"
        value /= 1024
    return f"{size} Bytes"


@dataclass
class ClassOverview:
    class_group: int
    lessons: List[LessonRecord] = field(default_factory=list)

    @property
    def video_count(self) -> int:
        return sum(1 for lesson in self.lessons if lesson.is_video)


@dataclass
class OverviewSnapshot:
    classes: List[ClassOverview]
    lesson_count: int
    video_count: int
    total_bytes: int
    teacher_count: int


class LessonOverviewUI:
    """Render lessons grouped by class with a summary panel."""

    def __init__(self, repository: LessonRepository, *, console: Optional[Console] = None) -> None:
        self._repository = repository
        self._console = console or Console()

    def run(self, *, class_group: Optional[int] = None) -> None:
        snapshot = self._collect_snapshot(class_group)
        console = self._console

        console.rule("[bold magenta]Lesson Portal Overview")

        if snapshot.lesson_count == 0:
            console.print(
                Panel(
                    "No lessons have been uploaded yet.\n"
                    "Teachers can upload through [bold]POST /api/lessons[/bold].",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return

        tree_panel = Panel(
            self._build_tree(snapshot.classes),
            title="Classes",
            border_style="cyan",
            box=box.ROUNDED,
        )
        console.print(Columns([tree_panel, self._build_stats_panel(snapshot)], expand=True, equal=True))

    def _build_tree(self, classes: List[ClassOverview]) -> Tree:
        tree = Tree("[bold cyan]Lessons", guide_style="cyan")
        for overview in classes:
            label = Text(f"Class {overview.class_group}", style="bold")
            label.append(f"  {len(overview.lessons)} lesson(s)", style="dim")
            class_node = tree.add(label)
            for lesson in overview.lessons:
                class_node.add(self._build_lesson_label(lesson))
        return tree

    @staticmethod
    def _build_lesson_label(lesson: LessonRecord) -> Text:
        label = Text(lesson.title, style="white")
        label.append("  ")
        label.append("🎬 " if lesson.is_video else "📄 ", style="green")
        label.append(f"{lesson.original_file_name} · {format_file_size(lesson.file_size_bytes)}", style="green")
        if lesson.description:
            label.append("\n")
            label.append(lesson.description, style="dim")
        return label

    def _build_stats_panel(self, snapshot: OverviewSnapshot) -> Panel:
        metrics = Table.grid(expand=True, padding=(0, 1))
        metrics.add_column(style="dim")
        metrics.add_column(justify="right", style="bold")
        metrics.add_row("Classes", str(len(snapshot.classes)))
        metrics.add_row("Lessons", str(snapshot.lesson_count))
        metrics.add_row("Videos", str(snapshot.video_count))
        metrics.add_row("Teachers", str(snapshot.teacher_count))

        storage = Table.grid(expand=True, padding=(0, 1))
        storage.add_column(style="dim")
        storage.add_column(justify="right", style="bold")
        storage.add_row("Stored", format_file_size(snapshot.total_bytes))

        body = Group(metrics, Rule(style="magenta"), storage)
        return Panel(body, title="At a glance", border_style="magenta", box=box.ROUNDED)

    def _collect_snapshot(self, class_group: Optional[int]) -> OverviewSnapshot:
        lessons = self._repository.list_lessons(class_group=class_group)
        grouped: Dict[int, ClassOverview] = defaultdict(lambda: ClassOverview(class_group=0))
        for lesson in lessons:
            overview = grouped[lesson.class_group]
            overview.class_group = lesson.class_group
            overview.lessons.append(lesson)
        classes = [grouped[key] for key in sorted(grouped)]
        return OverviewSnapshot(
            classes=classes,
            lesson_count=len(lessons),
            video_count=sum(overview.video_count for overview in classes),
            total_bytes=sum(lesson.file_size_bytes for lesson in lessons),
            teacher_count=len({lesson.teacher_id for lesson in lessons}),
        )


__all__ = ["LessonOverviewUI", "format_file_size"]
