from contextlib import asynccontextmanager

from fastapi import FastAPI

from kindgate.api.deps import provide_gateway
from kindgate.api.parental import router as parental_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    gateway = provide_gateway()
    gateway.start()
    yield
    await gateway.stop()


app = FastAPI(title="KindGate API", lifespan=lifespan)
app.include_router(parental_router)
