# Backend tables the chat accessors read and write. Applied through the
# Supabase SQL editor / migrations; kept here as the contract the code relies on.

conversations_sql = """
CREATE TABLE conversations (
    id BIGSERIAL PRIMARY KEY,
    type TEXT NOT NULL CHECK (type IN ('direct', 'group')),

    -- "min(user_a):max(user_b)" for direct chats
    direct_key TEXT UNIQUE,
    community_id BIGINT UNIQUE REFERENCES communities(id) ON DELETE CASCADE,

    created_at TIMESTAMPTZ DEFAULT now(),

    CONSTRAINT direct_has_key CHECK (type <> 'direct' OR direct_key IS NOT NULL),
    CONSTRAINT group_has_community CHECK (type <> 'group' OR community_id IS NOT NULL)
);
"""

conversation_members_sql = """
CREATE TABLE conversation_members (
    id BIGSERIAL PRIMARY KEY,
    conversation_id BIGINT REFERENCES conversations(id) ON DELETE CASCADE,
    user_id BIGINT REFERENCES users(id) ON DELETE CASCADE,
    role TEXT DEFAULT 'member',
    last_read_at TIMESTAMPTZ,
    joined_at TIMESTAMPTZ DEFAULT now(),
    UNIQUE (conversation_id, user_id)
);
"""

# Read watermarks only move forward, whatever the client sends.
monotonic_last_read_sql = """
CREATE OR REPLACE FUNCTION keep_last_read_monotonic() RETURNS trigger AS $$
BEGIN
    IF OLD.last_read_at IS NOT NULL
       AND (NEW.last_read_at IS NULL OR NEW.last_read_at < OLD.last_read_at) THEN
        NEW.last_read_at := OLD.last_read_at;
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

CREATE TRIGGER conversation_members_last_read_monotonic
BEFORE UPDATE OF last_read_at ON conversation_members
FOR EACH ROW EXECUTE FUNCTION keep_last_read_monotonic();
"""

messages_sql = """
CREATE TABLE messages (
    id BIGSERIAL PRIMARY KEY,
    conversation_id BIGINT REFERENCES conversations(id) ON DELETE CASCADE,
    user_id BIGINT REFERENCES users(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    attachments JSONB DEFAULT '[]'::jsonb,
    created_at TIMESTAMPTZ DEFAULT now(),
    deleted_at TIMESTAMPTZ
);

CREATE INDEX messages_conversation_created_idx ON messages (conversation_id, created_at DESC);
"""

# Realtime only broadcasts tables in the publication; UPDATE payloads need the full row.
realtime_publication_sql = """
ALTER PUBLICATION supabase_realtime ADD TABLE messages, conversation_members;
ALTER TABLE conversation_members REPLICA IDENTITY FULL;
"""

ALL_TABLES_SQL = [
    conversations_sql,
    conversation_members_sql,
    monotonic_last_read_sql,
    messages_sql,
    realtime_publication_sql,
]
