"""PostgreSQL schema for the ballot store.

The core invariants are enforced by the database itself:
- one ballot entry per (voter, position)
- an entry's position must equal its candidate's position (composite FK)
- candidates referenced by entries cannot be deleted
- ballot entries are append-only
- has_voted never goes back from true to false
"""

SCHEMA_LOCK_KEY = 'election_services_schema'

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS voters (
    voter_id     TEXT PRIMARY KEY,
    full_name    TEXT,
    is_verified  BOOLEAN NOT NULL DEFAULT FALSE,
    has_voted    BOOLEAN NOT NULL DEFAULT FALSE,
    voted_at     TIMESTAMPTZ,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS candidates (
    candidate_id SERIAL PRIMARY KEY,
    name         TEXT NOT NULL,
    position     TEXT NOT NULL,
    gender       TEXT,
    photo_url    TEXT,
    manifesto    TEXT,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT candidates_id_position_key UNIQUE (candidate_id, position)
);

CREATE TABLE IF NOT EXISTS ballot_entries (
    entry_id     BIGSERIAL PRIMARY KEY,
    voter_id     TEXT NOT NULL REFERENCES voters (voter_id) ON DELETE RESTRICT,
    candidate_id INTEGER NOT NULL,
    position     TEXT NOT NULL,
    cast_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT ballot_entries_voter_position_key UNIQUE (voter_id, position),
    CONSTRAINT ballot_entries_candidate_fkey FOREIGN KEY (candidate_id, position)
        REFERENCES candidates (candidate_id, position)
        ON DELETE RESTRICT ON UPDATE RESTRICT
);

CREATE INDEX IF NOT EXISTS ballot_entries_candidate_idx ON ballot_entries (candidate_id);

CREATE TABLE IF NOT EXISTS election_settings (
    setting_key   TEXT PRIMARY KEY,
    setting_value TEXT,
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE OR REPLACE FUNCTION ballot_entries_reject_mutation() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'ballot_entries is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS ballot_entries_append_only ON ballot_entries;
CREATE TRIGGER ballot_entries_append_only
    BEFORE UPDATE OR DELETE ON ballot_entries
    FOR EACH ROW EXECUTE FUNCTION ballot_entries_reject_mutation();

CREATE OR REPLACE FUNCTION voters_has_voted_monotonic() RETURNS trigger AS $$
BEGIN
    IF OLD.has_voted AND NOT NEW.has_voted THEN
        RAISE EXCEPTION 'has_voted cannot be reset for voter %', OLD.voter_id;
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS voters_has_voted_guard ON voters;
CREATE TRIGGER voters_has_voted_guard
    BEFORE UPDATE ON voters
    FOR EACH ROW EXECUTE FUNCTION voters_has_voted_monotonic();
"""
