"""
Task Decomposer - Goal to a DAG of capability-tagged subtasks.

Staged heuristic: collection capabilities are roots, analysis depends on all
collection subtasks, output depends on all analysis subtasks (or on the
collection stage when there is no analysis). An optional planner (e.g. an LLM)
can replace the heuristic; every decomposition is validated as a DAG.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Sequence

from agentmarket.engine.models import Subtask
from agentmarket.errors import DecompositionInvariantViolation
from agentmarket.log import get_logger

logger = get_logger("decomposer")

Planner = Callable[[str], Sequence[Subtask]]

# (keywords, capability, description) per stage, in emission order
COLLECTION_STAGE: list[tuple[tuple[str, ...], str, str]] = [
    (("scrape", "website", "web page", "crawl"), "web-scraping", "Scrape source web pages"),
    (("news", "headline", "press"), "news-aggregation", "Aggregate recent news coverage"),
    (("company", "competitor", "startup"), "company-data", "Collect company and competitor data"),
    (("market data", "stock", "ticker", "price history"), "market-data", "Collect market data"),
]

ANALYSIS_STAGE: list[tuple[tuple[str, ...], str, str]] = [
    (("sentiment", "opinion"), "sentiment-analysis", "Analyze sentiment"),
    (("summar", "digest", "tl;dr"), "text-summarization", "Summarize collected material"),
    (("market analysis", "market size", "market research"), "market-analysis", "Analyze the market"),
    (("trend", "forecast", "predict"), "trend-forecasting", "Forecast trends"),
    (("pricing", "price strategy"), "pricing-optimization", "Optimize pricing"),
    (("image", "photo", "screenshot"), "image-analysis", "Analyze images"),
    (("feature", "extract"), "feature-extraction", "Extract features"),
    (("translat",), "translation", "Translate content"),
]

OUTPUT_STAGE: list[tuple[tuple[str, ...], str, str]] = [
    (("chart", "visualiz", "graph", "plot"), "data-visualization", "Generate data visualizations"),
    (("copy", "tagline", "slogan"), "copywriting", "Write marketing copy"),
    (("report", "write-up", "brief"), "report-writing", "Write the final report"),
    (("presentation", "slides", "deck"), "presentation-building", "Build the presentation"),
    (("pdf",), "pdf-generation", "Render a PDF"),
]

PITCH_DECK_KEYWORDS = ("pitch deck", "investor")

# (description, capability, dependency indexes)
PITCH_DECK_TEMPLATE: list[tuple[str, str, tuple[int, ...]]] = [
    ("Research target market and competitors", "company-data", ()),
    ("Analyze market size and growth trends", "market-analysis", (0,)),
    ("Generate pricing strategy", "pricing-optimization", (0,)),
    ("Develop go-to-market strategy", "channel-planning", (1, 2)),
    ("Write compelling marketing copy", "copywriting", (3,)),
    ("Generate data visualizations", "data-visualization", (1, 2)),
    ("Build complete pitch deck presentation", "presentation-building", (4, 5)),
]

GENERIC_TEMPLATE: list[tuple[str, str, tuple[int, ...]]] = [
    ("Gather and aggregate relevant data", "data-aggregation", ()),
    ("Analyze and extract insights", "text-summarization", (0,)),
    ("Generate final report", "report-writing", (1,)),
]


class TaskDecomposer:
    """
    Turns a free-text goal into validated subtasks.

    Args:
        planner: Optional callable returning subtasks for a goal; on any
            exception the keyword heuristic is used instead
    """

    def __init__(self, planner: Planner | None = None) -> None:
        self.planner = planner

    def decompose(self, goal: str) -> list[Subtask]:
        """
        Decompose a goal.

        Raises:
            DecompositionInvariantViolation: Empty, duplicate, dangling or cyclic output
        """
        if not goal or not goal.strip():
            raise DecompositionInvariantViolation("goal must not be empty")

        subtasks: list[Subtask] | None = None
        if self.planner is not None:
            try:
                subtasks = list(self.planner(goal))
            except Exception as e:
                logger.warning("planner failed, using heuristic decomposition: %s", e)

        if subtasks is None:
            subtasks = heuristic_decompose(goal)

        validate_dag(subtasks)
        logger.info("decomposed goal into %d subtasks", len(subtasks))
        return subtasks


def heuristic_decompose(goal: str) -> list[Subtask]:
    """Keyword-driven staged decomposition."""
    text = goal.lower()

    if any(kw in text for kw in PITCH_DECK_KEYWORDS):
        return _from_template(PITCH_DECK_TEMPLATE, goal)

    collection = _match_stage(COLLECTION_STAGE, text)
    analysis = _match_stage(ANALYSIS_STAGE, text)
    output = _match_stage(OUTPUT_STAGE, text)

    if not (collection or analysis or output):
        return _from_template(GENERIC_TEMPLATE, goal)

    subtasks: list[Subtask] = []

    def add(capability: str, description: str, dependencies: tuple[str, ...]) -> str:
        subtask = Subtask(
            id=f"subtask-{len(subtasks) + 1}",
            description=f"{description} for: {goal[:80]}",
            capabilities=(capability,),
            dependencies=dependencies,
        )
        subtasks.append(subtask)
        return subtask.id

    collection_ids = tuple(add(cap, desc, ()) for cap, desc in collection)
    analysis_ids = tuple(add(cap, desc, collection_ids) for cap, desc in analysis)
    upstream = analysis_ids or collection_ids
    for cap, desc in output:
        add(cap, desc, upstream)

    return subtasks


def validate_dag(subtasks: Sequence[Subtask]) -> None:
    """
    Check a decomposition is a non-empty DAG.

    Raises:
        DecompositionInvariantViolation: Empty list, subtask without capabilities,
            duplicate id, unknown dependency or cycle
    """
    topological_order(subtasks)


def topological_order(subtasks: Sequence[Subtask]) -> list[Subtask]:
    """
    Kahn's algorithm; ties keep input order.

    Raises:
        DecompositionInvariantViolation: If the subtasks do not form a DAG
    """
    if not subtasks:
        raise DecompositionInvariantViolation("decomposition produced no subtasks")

    by_id: dict[str, Subtask] = {}
    for subtask in subtasks:
        if subtask.id in by_id:
            raise DecompositionInvariantViolation(
                f"duplicate subtask id {subtask.id}", {"subtask_id": subtask.id}
            )
        if not subtask.capabilities:
            raise DecompositionInvariantViolation(
                f"subtask {subtask.id} has no capabilities", {"subtask_id": subtask.id}
            )
        by_id[subtask.id] = subtask

    indegree = {s.id: 0 for s in subtasks}
    dependents: dict[str, list[str]] = {s.id: [] for s in subtasks}
    for subtask in subtasks:
        for dep in subtask.dependencies:
            if dep not in by_id:
                raise DecompositionInvariantViolation(
                    f"subtask {subtask.id} depends on unknown subtask {dep}",
                    {"subtask_id": subtask.id, "dependency_id": dep},
                )
            indegree[subtask.id] += 1
            dependents[dep].append(subtask.id)

    ready = deque(s.id for s in subtasks if indegree[s.id] == 0)
    ordered: list[Subtask] = []
    while ready:
        current = ready.popleft()
        ordered.append(by_id[current])
        for child in dependents[current]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)

    if len(ordered) != len(subtasks):
        cyclic = sorted(sid for sid, degree in indegree.items() if degree > 0)
        raise DecompositionInvariantViolation(
            f"dependency cycle among {', '.join(cyclic)}", {"subtask_ids": cyclic}
        )
    return ordered


def _match_stage(
    stage: list[tuple[tuple[str, ...], str, str]], text: str
) -> list[tuple[str, str]]:
    return [(cap, desc) for keywords, cap, desc in stage if any(kw in text for kw in keywords)]


def _from_template(template: list[tuple[str, str, tuple[int, ...]]], goal: str) -> list[Subtask]:
    return [
        Subtask(
            id=f"subtask-{index + 1}",
            description=f"{description} for: {goal[:80]}",
            capabilities=(capability,),
            dependencies=tuple(f"subtask-{dep + 1}" for dep in deps),
        )
        for index, (description, capability, deps) in enumerate(template)
    ]
