# db/__init__.py
import os
from contextlib import contextmanager
from pathlib import Path

DEFAULT_DATABASE_URL = "sqlite:///payments.db"


def database_url() -> str:
    # Lido a cada conexão: testes e deploys trocam a URL sem reimportar
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL).strip()


def is_postgres() -> bool:
    return database_url().startswith(("postgres://", "postgresql://"))

# ---------------------------
# Conexões (psycopg | sqlite)
# ---------------------------
def _ensure_sqlite_path(url: str) -> str:
    # Aceita: sqlite:///arquivo.db | sqlite:////abs/arquivo.db | payments.db
    if url.startswith("sqlite:////"):
        return url.replace("sqlite:////", "/", 1)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "", 1)
    return url

def get_connection():
    """
    Retorna uma conexão aberta (psycopg ou sqlite3).
    Para Postgres: autocommit desabilitado; commit/rollback feito em db_cursor().
    """
    if is_postgres():
        import psycopg
        from psycopg.rows import dict_row

        return psycopg.connect(database_url(), row_factory=dict_row)

    import sqlite3

    path = _ensure_sqlite_path(database_url())
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn

@contextmanager
def db_cursor():
    """
    Context manager que abre conexão + cursor e faz commit/rollback seguro.
    Uma transação explícita por bloco, em ambos os bancos.
    """
    conn = get_connection()
    cur = None
    try:
        cur = conn.cursor()
        # psycopg já inicia transação na primeira operação; sqlite precisa de BEGIN
        if not is_postgres():
            conn.execute("BEGIN")
        yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if cur is not None:
            cur.close()
        conn.close()

# ---------------------------
# Helpers SQL (placeholders)
# ---------------------------
def qp(sql: str) -> str:
    """
    Converte placeholders estilo SQLite ('?') para Postgres ('%s') quando necessário.
    """
    if is_postgres():
        return sql.replace("?", "%s")
    return sql

def is_integrity_error(exc: Exception) -> bool:
    if is_postgres():
        import psycopg
        return isinstance(exc, psycopg.IntegrityError)
    import sqlite3
    return isinstance(exc, sqlite3.IntegrityError)

# ---------------------------
# DDL
# ---------------------------
DDL_STATEMENTS = [
    # profiles (espelho mínimo do sistema de identidade)
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id          TEXT PRIMARY KEY,
        name        TEXT,
        email       TEXT,
        is_admin    BOOLEAN NOT NULL DEFAULT FALSE,
        created_at  TEXT NOT NULL
    )
    """,
    # pricing_rules (nunca apagadas, apenas desativadas)
    """
    CREATE TABLE IF NOT EXISTS pricing_rules (
        id           TEXT PRIMARY KEY,
        scope        TEXT NOT NULL CHECK (scope IN ('global', 'professional', 'client_override')),
        owner_id     TEXT,
        client_id    TEXT,
        product_key  TEXT NOT NULL,
        price_cents  INTEGER NOT NULL CHECK (price_cents >= 1),
        currency     TEXT NOT NULL DEFAULT 'BRL',
        active       BOOLEAN NOT NULL DEFAULT TRUE,
        created_at   TEXT NOT NULL,
        updated_at   TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS pricing_rules_active_tuple
        ON pricing_rules (scope, COALESCE(owner_id, ''), COALESCE(client_id, ''), product_key)
        WHERE active
    """,
    # orders (trilha de auditoria: nunca apagadas)
    """
    CREATE TABLE IF NOT EXISTS orders (
        id                  TEXT PRIMARY KEY,
        client_id           TEXT NOT NULL,
        professional_id     TEXT,
        product_key         TEXT NOT NULL,
        amount_cents        INTEGER NOT NULL,
        currency            TEXT NOT NULL DEFAULT 'BRL',
        status              TEXT NOT NULL CHECK (status IN ('pending', 'manual_review', 'paid', 'expired', 'canceled')),
        provider            TEXT NOT NULL CHECK (provider IN ('mercadopago', 'manual')),
        provider_reference  TEXT,
        pix_copy_paste      TEXT,
        pix_qr_image_url    TEXT,
        expires_at          TEXT,
        pricing_rule_id     TEXT,
        created_at          TEXT NOT NULL,
        paid_at             TEXT,
        effects_applied_at  TEXT,
        CHECK ((status = 'paid') = (paid_at IS NOT NULL))
    )
    """,
    "CREATE INDEX IF NOT EXISTS orders_provider_reference ON orders (provider, provider_reference)",
    "CREATE INDEX IF NOT EXISTS orders_client ON orders (client_id, created_at)",
    # manual_pix_proofs (reenvio permitido após rejeição)
    """
    CREATE TABLE IF NOT EXISTS manual_pix_proofs (
        id           TEXT PRIMARY KEY,
        order_id     TEXT NOT NULL REFERENCES orders (id),
        uploaded_by  TEXT NOT NULL,
        file_path    TEXT NOT NULL,
        status       TEXT NOT NULL CHECK (status IN ('submitted', 'approved', 'rejected')),
        reviewed_by  TEXT,
        reviewed_at  TEXT,
        created_at   TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS manual_pix_proofs_one_approved
        ON manual_pix_proofs (order_id)
        WHERE status = 'approved'
    """,
    # payment_provider_settings (linha única)
    """
    CREATE TABLE IF NOT EXISTS payment_provider_settings (
        id                       INTEGER PRIMARY KEY CHECK (id = 1),
        active_provider          TEXT,
        manual_pix_key           TEXT,
        manual_pix_copy_paste    TEXT,
        manual_pix_display_name  TEXT,
        manual_pix_instructions  TEXT,
        updated_at               TEXT
    )
    """,
    # entitlement_grants (registro do efeito externo, um por pedido)
    """
    CREATE TABLE IF NOT EXISTS entitlement_grants (
        order_id         TEXT PRIMARY KEY REFERENCES orders (id),
        client_id        TEXT NOT NULL,
        professional_id  TEXT,
        product_key      TEXT NOT NULL,
        granted_at       TEXT NOT NULL
    )
    """,
]

def init_db():
    """
    Cria as tabelas se não existirem. Idempotente.
    """
    with db_cursor() as cur:
        for stmt in DDL_STATEMENTS:
            cur.execute(stmt)
        cur.execute(
            qp("INSERT INTO payment_provider_settings (id, active_provider) VALUES (1, NULL) ON CONFLICT (id) DO NOTHING")
        )
