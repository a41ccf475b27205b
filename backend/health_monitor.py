import logging
import os
import time
from typing import Dict, Tuple

import psycopg2
import redis
import requests

import config

config.setup_logging()
logger = logging.getLogger("HealthMonitor")

API_URL = config.API_URL
DATABASE_URL = config.DATABASE_URL
REDIS_HOST = config.REDIS_HOST
REDIS_PORT = config.redis_port()

CHECK_INTERVAL = int(os.getenv("HEALTH_CHECK_INTERVAL", "60"))
STARTUP_DELAY = int(os.getenv("HEALTH_STARTUP_DELAY", "15"))
STALE_ORDER_MINUTES = int(os.getenv("STALE_ORDER_MINUTES", "30"))


def check_http_service(name: str, url: str, timeout: float = 5.0) -> Tuple[bool, str]:
    try:
        resp = requests.get(url, timeout=timeout)
        if resp.ok:
            return True, f"{name}: OK ({resp.status_code})"
        return False, f"{name}: FAIL ({resp.status_code})"
    except requests.RequestException as e:
        return False, f"{name}: ERROR ({e})"


def check_api() -> Tuple[bool, str]:
    return check_http_service("api /health", f"{API_URL}/health")


def check_menu() -> Tuple[bool, str]:
    return check_http_service("api /menu", f"{API_URL}/menu?limit=1")


def _query_one(sql: str, params=None):
    conn = psycopg2.connect(DATABASE_URL)
    try:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()
    finally:
        conn.close()


def check_database() -> Tuple[bool, str]:
    if not DATABASE_URL.startswith("postgres"):
        return True, "database: SKIPPED (not PostgreSQL)"
    try:
        row = _query_one("SELECT value FROM order_counters WHERE name = %s", ("orders",))
    except psycopg2.Error as e:
        return False, f"postgres: ERROR ({e})"
    if row is None:
        return False, "postgres: order sequence missing"
    return True, f"postgres: OK (last order ORD{row[0]:06d})"


def check_stale_orders() -> Tuple[bool, str]:
    """Orders left pending longer than STALE_ORDER_MINUTES need a human."""
    if not DATABASE_URL.startswith("postgres"):
        return True, "pending orders: SKIPPED (not PostgreSQL)"
    try:
        row = _query_one(
            "SELECT count(*) FROM orders WHERE status = 'pending' "
            "AND created_at < (now() at time zone 'utc') - make_interval(mins => %s)",
            (STALE_ORDER_MINUTES,),
        )
    except psycopg2.Error as e:
        return False, f"pending orders: ERROR ({e})"
    if row[0]:
        return False, f"pending orders: {row[0]} waiting over {STALE_ORDER_MINUTES} min"
    return True, "pending orders: OK"


def check_redis() -> Tuple[bool, str]:
    try:
        r = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, decode_responses=True, socket_connect_timeout=5)
        r.ping()
        return True, "redis: OK"
    except redis.RedisError as e:
        return False, f"redis: ERROR ({e})"


CHECKS = {
    "api": check_api,
    "menu": check_menu,
    "database": check_database,
    "pending_orders": check_stale_orders,
    "redis": check_redis,
}


def monitor_all_services() -> Dict[str, bool]:
    results: Dict[str, bool] = {}
    logger.info("=" * 60)
    logger.info("Health check results:")

    for name, func in CHECKS.items():
        ok, message = func()
        results[name] = ok
        if ok:
            logger.info(f"[OK ] {message}")
        else:
            logger.warning(f"[FAIL] {message}")

    logger.info("=" * 60)
    return results


if __name__ == "__main__":
    logger.info("Health Monitor Service Started")
    logger.info(f"Waiting {STARTUP_DELAY} seconds before first check to let services start...")
    time.sleep(STARTUP_DELAY)

    while True:
        try:
            monitor_all_services()
        except Exception as e:
            logger.error(f"Error during monitoring: {e}")
        logger.info(f"Next check in {CHECK_INTERVAL} seconds...")
        time.sleep(CHECK_INTERVAL)
