"""Postgres readiness check, run before migrations in the container entrypoint."""
import time
import psycopg2
from storefront.core_settings import get_settings

def wait(max_attempts: int = 30, delay: float = 1.0):
    settings = get_settings()
    for attempt in range(1, max_attempts + 1):
        try:
            conn = psycopg2.connect(
                dbname=settings.POSTGRES_DB,
                user=settings.POSTGRES_USER,
                password=settings.POSTGRES_PASSWORD,
                host=settings.POSTGRES_HOST,
                port=settings.POSTGRES_PORT,
            )
            conn.close()
            print(f"Database ready after {attempt} attempt(s).")
            return True
        except psycopg2.OperationalError as e:
            print(f"DB not ready (attempt {attempt}): {e}")
            time.sleep(delay)
    raise SystemExit("Database not ready after max attempts")

if __name__ == "__main__":
    wait()
