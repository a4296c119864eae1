"""One analysis run: tool servers up, agent loop, tool servers down, aggregate."""

from __future__ import annotations

import logging
from pathlib import Path

from .agent import AgentLoop, AnalysisResult, LoopOutcome, LoopStatus, ResultAggregator, ToolCatalog, ToolInvoker
from .agent.loop import EventListener
from .agent.prompts import build_task_prompt
from .config import Config, LLMConfig, get_config
from .errors import AnalysisCancelled, ConfigurationError
from .llm import ChatClient, build_chat_client
from .mcp import SessionFactory, ToolServerManager, build_server_configs

logger = logging.getLogger("khodkar.analyzer")


class CodebaseAnalyzer:
    """Runs the extraction for a single target directory.

    Tool-server connections and the LLM client are released on every exit
    path before any error reaches the caller.
    """

    def __init__(
        self,
        llm_config: LLMConfig,
        cfg: Config | None = None,
        chat_client: ChatClient | None = None,
        session_factory: SessionFactory | None = None,
        listener: EventListener | None = None,
    ) -> None:
        self.llm_config = llm_config
        self.cfg = cfg or get_config()
        self._chat_client = chat_client
        self._session_factory = session_factory
        self._listener = listener
        self.aggregator = ResultAggregator()
        self.loop: AgentLoop | None = None
        self.catalog: ToolCatalog | None = None
        self.outcome: LoopOutcome | None = None
        self._cancel_requested = False

    def cancel(self) -> None:
        self._cancel_requested = True
        if self.loop is not None:
            self.loop.cancel()

    async def analyze(self, directory: str | Path) -> AnalysisResult:
        target = Path(directory).expanduser().resolve()
        if not target.is_dir():
            raise ConfigurationError(f"Target directory does not exist: {target}", file_path=str(target))

        manager = ToolServerManager(
            build_server_configs(self.cfg, target),
            init_timeout=self.cfg.mcp_init_timeout,
            session_factory=self._session_factory,
        )
        llm = self._chat_client or build_chat_client(self.llm_config, self.cfg)

        logger.info(f"Analyzing {target} with model {self.llm_config.model} (max {self.llm_config.max_steps} steps)")
        try:
            async with manager:
                self.catalog = ToolCatalog(manager)
                await self.catalog.discover()

                invoker = ToolInvoker(
                    self.catalog,
                    timeout=self.cfg.tool_call_timeout,
                    max_result_chars=self.cfg.tool_result_max_chars,
                )
                self.loop = AgentLoop(
                    llm, self.catalog, invoker,
                    max_steps=self.llm_config.max_steps,
                    listener=self._listener,
                )
                if self._cancel_requested:
                    self.loop.cancel()
                self.outcome = await self.loop.run(build_task_prompt(str(target)))
        finally:
            await llm.close()

        if self.outcome.status is LoopStatus.CANCELLED:
            raise AnalysisCancelled(
                f"Analysis cancelled after {self.outcome.steps} step(s)",
                step=self.outcome.steps,
            )
        if self.outcome.status is LoopStatus.BUDGET_EXHAUSTED:
            logger.warning(
                f"Returning {'partial' if self.outcome.emission else 'no'} results after "
                f"exhausting {self.outcome.steps} steps"
            )

        rules = []
        if self.outcome.emission is not None:
            rules = self.aggregator.aggregate(
                self.outcome.emission,
                strict=self.outcome.status is LoopStatus.COMPLETED,
            )
        return self.aggregator.build_result(rules)


async def analyze_codebase(
    directory: str | Path,
    llm_config: LLMConfig,
    cfg: Config | None = None,
    listener: EventListener | None = None,
) -> AnalysisResult:
    return await CodebaseAnalyzer(llm_config, cfg, listener=listener).analyze(directory)
