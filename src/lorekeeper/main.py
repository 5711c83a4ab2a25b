"""lorekeeper CLI 入口：小说设定构件生成与检索。"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from lorekeeper.artifacts.compare import compare_artifact_content
from lorekeeper.config.settings import AppConfig, load_config
from lorekeeper.errors import ArtifactGenerationError, GenerationCancelledError, VectorDisabledError
from lorekeeper.graph.artifact_graph import ArtifactPipeline
from lorekeeper.llm.factory import ChatModelFactory, init_embeddings_from_config
from lorekeeper.models.artifact import ARTIFACT_TYPES, ArtifactType, parse_artifact_type
from lorekeeper.models.generation import (
    ArtifactConflictScanInput,
    ArtifactGenerateInput,
    TextAttachment,
)
from lorekeeper.models.segment import ChapterDocument, SearchInput, artifact_segment_type
from lorekeeper.output.manager import ArtifactOutputManager
from lorekeeper.retrieval.chroma_store import ChromaVectorRepository
from lorekeeper.retrieval.engine import RetrievalEngine
from lorekeeper.retrieval.indexer import Indexer
from lorekeeper.retrieval.prompt_context import build_prompt_context
from lorekeeper.utils.cancellation import CancellationToken
from lorekeeper.utils.token_tracker import TokenTracker

console = Console()
logger = logging.getLogger("lorekeeper")


# ────────────────────────────────────────────
# 项目文件与装配
# ────────────────────────────────────────────


def load_project(path: str | Path) -> dict[str, Any]:
    """读取项目文件（YAML）：tenant_id / project_id / title / description / genre。"""
    filepath = Path(path)
    if not filepath.exists():
        raise FileNotFoundError(f"项目文件不存在: {filepath}")
    with open(filepath, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"项目文件格式错误（顶层应为映射）: {filepath}")
    project = {
        "tenant_id": str(data.get("tenant_id") or "local"),
        "project_id": str(data.get("project_id") or filepath.stem),
        "title": str(data.get("title") or ""),
        "description": str(data.get("description") or ""),
        "genre": str(data.get("genre") or ""),
    }
    return project


def _output_manager(args: argparse.Namespace, project: dict[str, Any], tracker: TokenTracker | None = None):
    return ArtifactOutputManager(
        Path(args.output) / project["project_id"], project["title"] or "untitled", tracker
    )


def _build_retrieval(cfg: AppConfig) -> tuple[Any, Any]:
    """(embedder, vector_repo)；任一缺失时向量能力关闭。"""
    try:
        embedder = init_embeddings_from_config(cfg.embedding)
    except (ImportError, ValueError) as e:
        console.print(f"[yellow]Embedding 初始化失败，向量能力关闭: {e}[/yellow]")
        embedder = None
    repo = ChromaVectorRepository.from_config(cfg.vector_store) if embedder is not None else None
    return embedder, repo


def _read_text(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


def _read_attachments(paths: list[str] | None) -> list[TextAttachment]:
    return [TextAttachment(name=Path(p).name, content=_read_text(p)) for p in paths or []]


# ────────────────────────────────────────────
# 命令
# ────────────────────────────────────────────


def cmd_generate(args: argparse.Namespace) -> None:
    """生成或增量更新一个构件。"""
    cfg = load_config(args.config)
    project = load_project(args.project)
    atype = parse_artifact_type(args.type)
    tracker = TokenTracker()
    output = _output_manager(args, project, tracker)

    request = ArtifactGenerateInput(
        tenant_id=project["tenant_id"],
        project_id=project["project_id"],
        project_title=project["title"],
        project_description=project["description"],
        type=atype,
        prompt=args.prompt,
        attachments=_read_attachments(args.attach),
        current_worldview=output.load_artifact(ArtifactType.WORLDVIEW.value),
        current_characters=output.load_artifact(ArtifactType.CHARACTERS.value),
        current_outline=output.load_artifact(ArtifactType.OUTLINE.value),
        current_artifact_raw="" if args.full else output.load_artifact(atype.value),
        provider=args.provider or cfg.model.provider,
        model=args.model or "",
        temperature=args.temperature,
    )

    embedder, repo = _build_retrieval(cfg)
    engine = RetrievalEngine(embedder, repo, config=cfg.retrieval)
    pipeline = ArtifactPipeline(ChatModelFactory(cfg.model), engine, cfg, tracker=tracker)

    mode = "patch" if request.current_artifact_raw.strip() else "full"
    console.print(
        Panel(
            f"构件类型: [bold]{atype.value}[/bold]  模式: [bold]{mode}[/bold]\n"
            f"模型: [cyan]{request.provider}:{request.model or cfg.model.model_name}[/cyan]",
            title=project["title"] or project["project_id"],
        )
    )

    previous = output.load_artifact(atype.value)
    token = CancellationToken(timeout=args.timeout) if args.timeout else None
    try:
        result = pipeline.generate(request, cancel_token=token)
    except (ArtifactGenerationError, GenerationCancelledError) as e:
        console.print(f"[red]生成失败: {e}[/red]")
        sys.exit(1)

    path = output.save_artifact(result)
    console.print(f"[green]构件已保存:[/green] {path}")
    console.print(
        f"tokens: prompt={result.meta.prompt_tokens} completion={result.meta.completion_tokens}"
    )

    if previous.strip():
        _print_diff(compare_artifact_content(atype, previous, result.content).model_dump())

    if repo is not None and not args.no_index:
        indexer = Indexer(embedder, repo, cfg.retrieval, cfg.embedding)
        count = indexer.index_artifact_json(
            project["tenant_id"],
            project["project_id"],
            atype.value,
            f"{project['project_id']}:{atype.value}",
            json.dumps(result.content, ensure_ascii=False),
        )
        console.print(f"已索引 {count} 个片段")

    if args.scan and previous.strip():
        report = pipeline.scan_conflicts(
            ArtifactConflictScanInput(
                project_title=project["title"],
                project_description=project["description"],
                project_genre=project["genre"],
                type=atype,
                current_worldview=request.current_worldview,
                current_characters=request.current_characters,
                current_outline=request.current_outline,
                current_artifact=previous,
                new_artifact=json.dumps(result.content, ensure_ascii=False),
                provider=request.provider,
                model=request.model,
            )
        )
        output.save_conflict_report(atype.value, report)
        _print_conflicts(report.conflicts)


def cmd_scan_conflicts(args: argparse.Namespace) -> None:
    """检查新构件与已保存设定之间的冲突。"""
    cfg = load_config(args.config)
    project = load_project(args.project)
    atype = parse_artifact_type(args.type)
    tracker = TokenTracker()
    output = _output_manager(args, project, tracker)
    pipeline = ArtifactPipeline(ChatModelFactory(cfg.model), None, cfg, tracker=tracker)

    report = pipeline.scan_conflicts(
        ArtifactConflictScanInput(
            project_title=project["title"],
            project_description=project["description"],
            project_genre=project["genre"],
            type=atype,
            current_worldview=output.load_artifact(ArtifactType.WORLDVIEW.value),
            current_characters=output.load_artifact(ArtifactType.CHARACTERS.value),
            current_outline=output.load_artifact(ArtifactType.OUTLINE.value),
            current_artifact=output.load_artifact(atype.value),
            new_artifact=_read_text(args.new),
            provider=args.provider or cfg.model.provider,
            model=args.model or "",
        )
    )
    output.save_conflict_report(atype.value, report)
    _print_conflicts(report.conflicts)


def cmd_compare(args: argparse.Namespace) -> None:
    """对比同一构件的两个版本。"""
    diff = compare_artifact_content(args.type, _read_text(args.before), _read_text(args.after))
    _print_diff(diff.model_dump())


def cmd_index_chapter(args: argparse.Namespace) -> None:
    cfg = load_config(args.config)
    project = load_project(args.project)
    embedder, repo = _build_retrieval(cfg)
    indexer = Indexer(embedder, repo, cfg.retrieval, cfg.embedding)
    chapter = ChapterDocument(
        id=args.chapter_id,
        title=args.title or "",
        content_text=_read_text(args.file),
        story_time_start=args.story_time_start,
        story_time_end=args.story_time_end,
    )
    try:
        count = indexer.index_chapter(project["tenant_id"], project["project_id"], chapter)
    except VectorDisabledError as e:
        console.print(f"[yellow]向量能力未启用，跳过索引: {e.reason}[/yellow]")
        return
    console.print(f"[green]章节 {chapter.id} 已索引 {count} 个片段[/green]")


def cmd_index_artifact(args: argparse.Namespace) -> None:
    cfg = load_config(args.config)
    project = load_project(args.project)
    atype = parse_artifact_type(args.type)
    embedder, repo = _build_retrieval(cfg)
    indexer = Indexer(embedder, repo, cfg.retrieval, cfg.embedding)
    artifact_id = args.artifact_id or f"{project['project_id']}:{atype.value}"
    try:
        count = indexer.index_artifact_json(
            project["tenant_id"], project["project_id"], atype.value, artifact_id, _read_text(args.file)
        )
    except VectorDisabledError as e:
        console.print(f"[yellow]向量能力未启用，跳过索引: {e.reason}[/yellow]")
        return
    console.print(f"[green]构件 {artifact_id} 已索引 {count} 个片段[/green]")


def cmd_search(args: argparse.Namespace) -> None:
    cfg = load_config(args.config)
    project = load_project(args.project)
    embedder, repo = _build_retrieval(cfg)
    engine = RetrievalEngine(embedder, repo, config=cfg.retrieval)

    segment_types: list[str] = []
    for t in args.types or []:
        segment_types.append("chapter" if t == "chapter" else artifact_segment_type(parse_artifact_type(t).value))
    search_input = SearchInput(
        tenant_id=project["tenant_id"],
        project_id=project["project_id"],
        query=args.query,
        current_story_time=args.story_time,
        top_k=args.top_k,
        segment_types=segment_types,
    )
    out = engine.debug_search(search_input) if args.debug else engine.search(search_input)

    if out.disabled_reason:
        console.print(f"[yellow]向量检索不可用: {out.disabled_reason}[/yellow]")
    table = Table(title=f"检索：{args.query}")
    table.add_column("#", justify="right")
    table.add_column("score", justify="right")
    table.add_column("来源")
    table.add_column("片段")
    for i, seg in enumerate(out.segments, start=1):
        ref = seg.ref_path if seg.doc_type == "artifact" else seg.chapter_title or seg.chapter_id
        table.add_row(str(i), f"{seg.score:.3f}", f"{seg.doc_type}:{ref}", seg.text[:80])
    console.print(table)
    if args.prompt_context:
        console.print(build_prompt_context(out.segments))
    if out.debug is not None:
        console.print(out.debug.model_dump())


# ────────────────────────────────────────────
# 展示
# ────────────────────────────────────────────


def _print_diff(diff: dict[str, Any]) -> None:
    changed = diff.get("changed_fields") or []
    if not changed:
        console.print("[dim]内容无变化[/dim]")
        return
    table = Table(title=f"变更：{diff.get('artifact_type')}")
    table.add_column("项")
    table.add_column("内容")
    table.add_row("changed_fields", ", ".join(changed))
    for section in ("novel_foundation", "worldview", "characters", "outline"):
        detail = diff.get(section) or {}
        for key, value in detail.items():
            if value:
                table.add_row(f"{section}.{key}", json.dumps(value, ensure_ascii=False))
    console.print(table)


def _print_conflicts(conflicts: list) -> None:
    if not conflicts:
        console.print("[green]未发现冲突[/green]")
        return
    colors = {"high": "red", "medium": "yellow", "low": "dim"}
    table = Table(title=f"冲突 ({len(conflicts)})")
    table.add_column("严重程度")
    table.add_column("说明")
    table.add_column("已有设定")
    table.add_column("新构件")
    table.add_column("建议")
    for c in conflicts:
        color = colors.get(c.severity, "white")
        table.add_row(
            f"[{color}]{c.severity}[/{color}]", c.message, c.existing_ref, c.new_ref, c.suggestion
        )
    console.print(table)


def main() -> None:
    """CLI 主入口。"""
    from dotenv import load_dotenv
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="lorekeeper",
        description="lorekeeper - 小说设定构件生成与检索",
    )
    parser.add_argument("--config", default=None, help="配置文件路径（YAML，可选）")
    parser.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")
    subparsers = parser.add_subparsers(dest="command", help="可用命令")

    gen_parser = subparsers.add_parser("generate", help="生成或增量更新构件")
    gen_parser.add_argument("project", help="项目文件路径（YAML）")
    gen_parser.add_argument("--type", required=True, choices=ARTIFACT_TYPES, help="构件类型")
    gen_parser.add_argument("--prompt", default="", help="生成/修改要求")
    gen_parser.add_argument("--attach", action="append", help="附加材料文件（可多次指定）")
    gen_parser.add_argument("--provider", default="", help="模型提供商（覆盖配置）")
    gen_parser.add_argument("--model", default="", help="模型名称（覆盖配置）")
    gen_parser.add_argument("--temperature", type=float, default=None, help="生成温度")
    gen_parser.add_argument("--timeout", type=float, default=None, help="超时秒数")
    gen_parser.add_argument("--full", action="store_true", help="忽略已有构件，全量重新生成")
    gen_parser.add_argument("--scan", action="store_true", help="生成后执行冲突扫描")
    gen_parser.add_argument("--no-index", action="store_true", help="生成后不写入向量索引")
    gen_parser.add_argument("--output", "-o", default="output", help="输出目录")

    scan_parser = subparsers.add_parser("scan-conflicts", help="检查新构件与已有设定的冲突")
    scan_parser.add_argument("project", help="项目文件路径（YAML）")
    scan_parser.add_argument("--type", required=True, choices=ARTIFACT_TYPES, help="构件类型")
    scan_parser.add_argument("--new", required=True, help="新构件 JSON 文件")
    scan_parser.add_argument("--provider", default="", help="模型提供商（覆盖配置）")
    scan_parser.add_argument("--model", default="", help="模型名称（覆盖配置）")
    scan_parser.add_argument("--output", "-o", default="output", help="输出目录")

    compare_parser = subparsers.add_parser("compare", help="对比构件的两个版本")
    compare_parser.add_argument("--type", required=True, choices=ARTIFACT_TYPES, help="构件类型")
    compare_parser.add_argument("before", help="旧版本 JSON 文件")
    compare_parser.add_argument("after", help="新版本 JSON 文件")

    chapter_parser = subparsers.add_parser("index-chapter", help="重建单章向量索引")
    chapter_parser.add_argument("project", help="项目文件路径（YAML）")
    chapter_parser.add_argument("file", help="章节正文文件")
    chapter_parser.add_argument("--chapter-id", required=True, help="章节 ID")
    chapter_parser.add_argument("--title", default="", help="章节标题")
    chapter_parser.add_argument("--story-time-start", type=int, default=0, help="故事内起始时间")
    chapter_parser.add_argument("--story-time-end", type=int, default=0, help="故事内结束时间")

    artifact_parser = subparsers.add_parser("index-artifact", help="重建单个构件的向量索引")
    artifact_parser.add_argument("project", help="项目文件路径（YAML）")
    artifact_parser.add_argument("file", help="构件 JSON 文件")
    artifact_parser.add_argument("--type", required=True, choices=ARTIFACT_TYPES, help="构件类型")
    artifact_parser.add_argument("--artifact-id", default="", help="构件 ID（默认 <project_id>:<type>）")

    search_parser = subparsers.add_parser("search", help="检索章节与构件片段")
    search_parser.add_argument("project", help="项目文件路径（YAML）")
    search_parser.add_argument("query", help="查询文本")
    search_parser.add_argument("--top-k", type=int, default=0, help="返回条数")
    search_parser.add_argument(
        "--types", nargs="*", help="限定片段类型：chapter 或构件类型（可多个）"
    )
    search_parser.add_argument("--story-time", type=int, default=0, help="只召回该时间点之前的片段")
    search_parser.add_argument("--debug", action="store_true", help="输出耗时与候选数")
    search_parser.add_argument("--prompt-context", action="store_true", help="输出提示词上下文块")

    args = parser.parse_args()

    # 配置日志
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)],
    )

    if args.command == "generate":
        cmd_generate(args)
    elif args.command == "scan-conflicts":
        cmd_scan_conflicts(args)
    elif args.command == "compare":
        cmd_compare(args)
    elif args.command == "index-chapter":
        cmd_index_chapter(args)
    elif args.command == "index-artifact":
        cmd_index_artifact(args)
    elif args.command == "search":
        cmd_search(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
