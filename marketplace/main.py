import logging
import os
import time

import stripe
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from marketplace.config import CORS_ORIGINS, LOG_LEVEL, STRIPE_WEBHOOK_SECRET
from marketplace.database import get_db, init_db
from marketplace.errors import MarketplaceError
from marketplace.purchases import PurchaseFlow
from marketplace.routes import (
    admin,
    categories,
    courses,
    enrollments,
    modules,
    payments,
    reviews,
    users,
)

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("marketplace")

app = FastAPI(title="Course Marketplace")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(categories.router)
app.include_router(courses.router)
app.include_router(modules.router)
app.include_router(enrollments.router)
app.include_router(payments.router)
app.include_router(reviews.router)
app.include_router(users.router)
app.include_router(admin.router)

init_db()


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("%s %s failed", request.method, request.url.path)
        raise
    logger.info("%s %s %s %.1fms", request.method, request.url.path,
                response.status_code, (time.perf_counter() - started) * 1000)
    return response


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error("%s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.exception("Health check failed: %s", e)
        raise HTTPException(status_code=503, detail="Database unreachable")
    return {"status": "ok"}


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
):
    if not stripe_signature:
        raise HTTPException(status_code=400, detail="Missing stripe signature")
    payload = await request.body()

    try:
        event = stripe.Webhook.construct_event(payload, stripe_signature, STRIPE_WEBHOOK_SECRET)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    flow = PurchaseFlow(db)
    intent = event["data"]["object"]
    if event["type"] == "payment_intent.succeeded":
        flow.handle_payment_succeeded(intent)
    elif event["type"] == "payment_intent.payment_failed":
        flow.handle_payment_failed(intent)
    else:
        logger.info("Unhandled event type %s", event["type"])

    return {"received": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
