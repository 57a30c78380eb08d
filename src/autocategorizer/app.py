import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from autocategorizer.api.routes import candidates, categorize, usage
from autocategorizer.core import settings
from autocategorizer.integration.stores import (
    InMemoryCandidateStore,
    InMemoryCategoryResolver,
    InMemoryRuleStore,
    InMemoryTransactionStore,
)
from autocategorizer.logger import get_logger, setup_logging
from autocategorizer.pipeline import CategorizationPipeline
from autocategorizer.services.candidates import CandidateService
from autocategorizer.services.suggestions import OpenAISuggestionService
from autocategorizer.services.usage import UsageTracker
from autocategorizer.stages.base import Stage
from autocategorizer.stages.llm import LLMStage
from autocategorizer.stages.rules import RuleMatchingStage
from autocategorizer.stages.similarity import FuzzyHistoryMatcher, SimilarityStage

logger = get_logger(__name__)

RULES_FILE = "rules.json"
CATEGORIES_FILE = "categories.json"
HISTORY_FILE = "history.json"
CANDIDATES_FILE = "candidates.json"


def create_app() -> FastAPI:
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Initializing services...")
        settings.log_environment()
        pipeline_settings = settings.PipelineSettings.from_env()

        transactions = InMemoryTransactionStore()
        rules = InMemoryRuleStore.from_json(os.path.join(settings.DATA_DIR, RULES_FILE))
        categories = InMemoryCategoryResolver.from_json(
            os.path.join(settings.DATA_DIR, CATEGORIES_FILE)
        )
        matcher = FuzzyHistoryMatcher(
            data_path=os.path.join(settings.DATA_DIR, HISTORY_FILE),
            threshold=pipeline_settings.similarity_threshold,
        )
        candidate_service = CandidateService(
            candidates=InMemoryCandidateStore(os.path.join(settings.DATA_DIR, CANDIDATES_FILE)),
            transactions=transactions,
            rules=rules,
            categories=categories,
            on_confirmed=matcher.learn,
        )
        usage_tracker = UsageTracker(max_calls_per_day=pipeline_settings.max_ai_calls_per_user_per_day)

        stages: list[Stage] = [
            RuleMatchingStage(rules, categories, pipeline_settings),
            SimilarityStage(matcher, pipeline_settings),
        ]
        if os.getenv("OPENAI_API_KEY"):
            service = OpenAISuggestionService(
                categories,
                model=pipeline_settings.openai_model,
                base_url=pipeline_settings.openai_base_url,
                timeout=pipeline_settings.llm_timeout_seconds,
            )
            stages.append(LLMStage(service, pipeline_settings))
        else:
            logger.warning("OPENAI_API_KEY not set. LLM categorization will be disabled.")

        app.state.transactions = transactions
        app.state.rules = rules
        app.state.categories = categories
        app.state.candidate_service = candidate_service
        app.state.usage = usage_tracker
        app.state.pipeline = CategorizationPipeline(
            stages,
            usage=usage_tracker,
            candidates=candidate_service,
            transactions=transactions,
            rules=rules,
            on_confirmed=matcher.learn_many,
        )

        logger.info("Services initialized with stages: %s", ", ".join(s.name for s in stages))
        yield
        logger.info("Service shutting down.")

    app = FastAPI(title="Transaction Auto-Categorizer", lifespan=lifespan)

    app.include_router(categorize.router)
    app.include_router(candidates.router)
    app.include_router(usage.router)

    return app


app = create_app()
