import asyncpg


async def setup_database_schema(connection: asyncpg.Connection) -> None:
    """Initialize database tables."""
    await connection.execute(
        """CREATE TABLE IF NOT EXISTS users(
            user_id TEXT PRIMARY KEY,
            username TEXT NOT NULL DEFAULT '',
            display_name TEXT,
            access_token TEXT NOT NULL DEFAULT '',
            refresh_token TEXT NOT NULL DEFAULT '',
            token_expiry TIMESTAMP WITH TIME ZONE,
            is_active BOOLEAN DEFAULT true,
            notification_settings TEXT,
            webhook_url TEXT,
            created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
        )"""
    )

    await connection.execute(
        """CREATE TABLE IF NOT EXISTS counters(
            user_id TEXT PRIMARY KEY REFERENCES users(user_id) ON DELETE CASCADE,
            deaths INTEGER NOT NULL DEFAULT 0,
            swears INTEGER NOT NULL DEFAULT 0,
            screams INTEGER NOT NULL DEFAULT 0,
            bits INTEGER NOT NULL DEFAULT 0,
            custom_counters TEXT NOT NULL DEFAULT '{}',
            stream_started TIMESTAMP WITH TIME ZONE,
            last_notified_stream_id TEXT,
            last_updated TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
        )"""
    )

    await connection.execute(
        """CREATE TABLE IF NOT EXISTS chat_command_configs(
            user_id TEXT PRIMARY KEY REFERENCES users(user_id) ON DELETE CASCADE,
            config TEXT NOT NULL DEFAULT '{}',
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
        )"""
    )

    await connection.execute(
        """CREATE TABLE IF NOT EXISTS bot_credentials(
            username TEXT PRIMARY KEY,
            user_id TEXT,
            access_token TEXT NOT NULL DEFAULT '',
            refresh_token TEXT NOT NULL DEFAULT '',
            token_expiry TIMESTAMP WITH TIME ZONE,
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
        )"""
    )

    await connection.execute(
        "CREATE INDEX IF NOT EXISTS idx_users_active ON users(is_active) WHERE is_active"
    )
