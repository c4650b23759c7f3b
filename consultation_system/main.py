import sys
import argparse
import time

import uvicorn
from fastapi import Request
from prometheus_client import Counter, Histogram
from alembic import command
from alembic.config import Config
import os
import logging
from prometheus_fastapi_instrumentator import Instrumentator
from .app import create_app
from .app.credits import seed_plans
from .app.models import Base
from .app.dependencies import DATABASE_URL, SessionLocal, engine, get_redis_client
from .app.reconciliation import reconcile_once, run_forever

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

app = create_app()

# Custom Prometheus metrics for specific routes
ROUTE_REQUEST_COUNT = Counter("route_request_count", "Total number of requests per route", ["method", "endpoint"])
ROUTE_REQUEST_LATENCY = Histogram("route_request_latency_seconds", "Request latency in seconds per route", ["method", "endpoint"])


# Middleware to track custom metrics
@app.middleware("http")
async def add_metrics(request: Request, call_next):
    start_time = time.time()

    response = await call_next(request)

    # Label by route template so ids don't explode cardinality
    route = request.scope.get("route")
    endpoint = route.path if route is not None else request.url.path
    ROUTE_REQUEST_COUNT.labels(method=request.method, endpoint=endpoint).inc()
    ROUTE_REQUEST_LATENCY.labels(method=request.method, endpoint=endpoint).observe(time.time() - start_time)

    return response


# Instrument the app with Prometheus metrics
Instrumentator().instrument(app).expose(app, include_in_schema=False, endpoint="/metrics")


def start_server():
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", 8000)))


def create_tables():
    logging.info(f"Creating tables on {engine.url.render_as_string(hide_password=True)}")
    Base.metadata.create_all(engine)
    print("Database tables created successfully.")


def seed_default_plans():
    db = SessionLocal()
    try:
        created = seed_plans(db)
    finally:
        db.close()
    print(f"Seeded {created} plan(s).")


def reconcile_single_pass():
    db = SessionLocal()
    try:
        summary = reconcile_once(db, get_redis_client())
    finally:
        db.close()
    print(summary)


def run_migrations(action, revision=None, message=None):
    # Inline Alembic configuration
    alembic_cfg = Config()
    alembic_cfg.set_main_option('sqlalchemy.url', DATABASE_URL)
    alembic_cfg.set_main_option('script_location',
                                os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'migrations'))

    if action == "upgrade":
        command.upgrade(alembic_cfg, "head")
    elif action == "downgrade":
        if not revision:
            print("Please specify a revision to downgrade to.")
            return
        command.downgrade(alembic_cfg, revision)
    elif action == "revision":
        if not message:
            print("Please provide a message for the migration.")
            return
        command.revision(alembic_cfg, autogenerate=True, message=message)
    elif action == "current":
        command.current(alembic_cfg)
    else:
        print("Invalid action specified for migrations.")


def clear_redis_cache():
    redis_client = get_redis_client()
    redis_client.flushdb()
    print("Redis cache cleared successfully.")


def main():
    parser = argparse.ArgumentParser(description="Consultation System Application")
    parser.add_argument(
        '--mode',
        type=str,
        choices=['server', 'reconcile', 'reconcile-once', 'create-tables', 'seed-plans', 'migrate', 'clear-cache'],
        required=True,
        help="Mode to run the application in. 'server' starts the FastAPI server, 'reconcile' runs the "
             "reconciliation loop, 'reconcile-once' runs a single pass, 'create-tables' creates the database "
             "tables, 'seed-plans' installs the default plan catalogue, 'migrate' manages database migrations "
             "and 'clear-cache' clears the Redis cache."
    )

    parser.add_argument(
        '--action',
        type=str,
        choices=['upgrade', 'downgrade', 'revision', 'current'],
        help="Action to perform with Alembic migrations. Required if mode is 'migrate'."
    )

    parser.add_argument(
        '--revision',
        type=str,
        help="Specify the revision for downgrade or other Alembic commands where needed."
    )

    parser.add_argument(
        '--message',
        type=str,
        help="Message to use with the 'revision' action in Alembic."
    )

    args = parser.parse_args()

    if args.mode == 'server':
        start_server()
    elif args.mode == 'reconcile':
        run_forever()
    elif args.mode == 'reconcile-once':
        reconcile_single_pass()
    elif args.mode == 'create-tables':
        create_tables()
    elif args.mode == 'seed-plans':
        seed_default_plans()
    elif args.mode == 'migrate':
        if not args.action:
            print("Please specify an action for the 'migrate' mode.")
        else:
            run_migrations(args.action, args.revision, args.message)
    elif args.mode == 'clear-cache':
        clear_redis_cache()


if __name__ == "__main__":
    main()
