import logging
import os
from contextlib import asynccontextmanager
from functools import lru_cache

import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from callcore.cache import FastCache, LocalTTLCache
from callcore.compiler import PolicyCompiler, PolicyRegistry
from callcore.config import load_tenant_directory, validate_config
from callcore.errors import CompileInProgress, PolicyValidationError
from callcore.memory import MemoryStore
from callcore.policy_engine import PolicyEngine
from callcore.providers import GenerativeClient, SemanticSearchClient
from callcore.router import IntentRouter
from callcore.rules import RuleSet
from callcore.session_store import SessionStore
from callcore.state_machine import ConversationStateMachine
from callcore.store import DocumentStore
from callcore.turn import TurnProcessor

load_dotenv()

logger = logging.getLogger(__name__)


class Services:
    """Everything one worker process shares across calls."""

    def __init__(self, processor: TurnProcessor, compiler: PolicyCompiler, router: IntentRouter):
        self.processor = processor
        self.compiler = compiler
        self.router = router

    async def bootstrap(self):
        """Compile every rule set shipped in the tenant config file."""
        for tenant_id, raw in self.processor.directory.rule_sets.items():
            try:
                await self.compiler.compile(RuleSet.from_dict(raw, tenant_id=tenant_id))
            except (PolicyValidationError, CompileInProgress) as e:
                logger.error("Startup compile failed for %s: %s", tenant_id, e)

    async def close(self):
        await self.router.drain()
        await self.processor.sessions.drain()


@lru_cache
def get_services() -> Services:
    validate_config()

    cache = FastCache(url=os.getenv("REDIS_URL", ""))
    store = DocumentStore(
        base_url=os.getenv("DOCUMENT_STORE_URL", ""),
        api_key=os.getenv("DOCUMENT_STORE_API_KEY", ""),
    )
    memory = MemoryStore(cache, store)

    semantic = None
    if os.getenv("SEMANTIC_SEARCH_URL"):
        semantic = SemanticSearchClient(base_url=os.getenv("SEMANTIC_SEARCH_URL"))
    generative = None
    if os.getenv("OPENAI_API_KEY"):
        generative = GenerativeClient(
            api_key=os.getenv("OPENAI_API_KEY"),
            model=os.getenv("GENERATIVE_MODEL", "gpt-4o-mini"),
        )

    registry = PolicyRegistry(cache, store)
    policy = PolicyEngine(registry)
    router = IntentRouter(memory=memory, semantic=semantic, generative=generative)
    processor = TurnProcessor(
        directory=load_tenant_directory(),
        sessions=SessionStore(LocalTTLCache(), cache, store, memory),
        machine=ConversationStateMachine(router, policy),
        policy=policy,
    )
    return Services(processor, PolicyCompiler(registry), router)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = get_services()
    await services.bootstrap()
    yield
    await services.close()


app = FastAPI(title="callcore decision service", lifespan=lifespan)


class TurnRequest(BaseModel):
    tenant_id: str
    call_id: str
    caller_id: str = ""
    utterance: str = ""


class EndCallRequest(BaseModel):
    tenant_id: str
    outcome: str = ""


@app.get("/health")
async def health():
    return PlainTextResponse("ok")


@app.post("/turn")
async def turn(req: TurnRequest, services: Services = Depends(get_services)):
    result = await services.processor.process_turn(
        req.tenant_id, req.call_id, req.caller_id, req.utterance,
    )
    return result.to_dict()


@app.post("/calls/{call_id}/end")
async def end_call(call_id: str, req: EndCallRequest, services: Services = Depends(get_services)):
    archive = await services.processor.sessions.finalize(call_id, req.tenant_id, req.outcome)
    if archive is None:
        raise HTTPException(status_code=404, detail=f"no turns recorded for call {call_id}")
    return {
        "call_id": call_id,
        "outcome": archive["outcome"],
        "turns": archive["turns"],
        "confirmed_slots": archive["confirmed_slots"],
    }


@app.post("/tenants/{tenant_id}/policy")
async def compile_policy(tenant_id: str, rule_set: dict, services: Services = Depends(get_services)):
    try:
        artifact = await services.compiler.compile(RuleSet.from_dict(rule_set, tenant_id=tenant_id))
    except CompileInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PolicyValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {
        "tenant_id": tenant_id,
        "version": artifact.version,
        "checksum": artifact.checksum,
        "conflicts": [c.to_dict() for c in artifact.conflicts],
    }


if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    port = int(os.getenv("PORT", "8765"))
    uvicorn.run("callcore.bot:app", host="0.0.0.0", port=port)
