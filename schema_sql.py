# SQL text for the optional analytics tables and helper functions.
# Nothing here talks to the database; callers paste the text into the
# Supabase SQL editor or send it through the execute_sql RPC.


def _timestamp_trigger(table: str) -> str:
    return f"""
-- Keep updated_at current
CREATE OR REPLACE FUNCTION update_{table}_timestamp()
RETURNS TRIGGER AS $$
BEGIN
   NEW.updated_at = NOW();
   RETURN NEW;
END;
$$ language 'plpgsql';

CREATE TRIGGER update_{table}_timestamp
BEFORE UPDATE ON {table}
FOR EACH ROW
EXECUTE FUNCTION update_{table}_timestamp();
"""


def generate_model_usage_stats_table_sql() -> str:
    return """
CREATE TABLE model_usage_stats (
  id SERIAL PRIMARY KEY,
  model_id UUID REFERENCES ai_models(id) ON DELETE CASCADE,
  message_count INTEGER NOT NULL DEFAULT 0,
  avg_response_time NUMERIC(5,2) NOT NULL DEFAULT 0,
  avg_rating NUMERIC(3,1) NOT NULL DEFAULT 0,
  active_users INTEGER NOT NULL DEFAULT 0,
  updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE INDEX idx_model_usage_stats_model_id ON model_usage_stats(model_id);
""" + _timestamp_trigger('model_usage_stats')


def generate_user_activity_table_sql() -> str:
    return """
CREATE TABLE user_activity (
  id SERIAL PRIMARY KEY,
  date DATE NOT NULL UNIQUE,
  active_users INTEGER NOT NULL DEFAULT 0,
  new_users INTEGER NOT NULL DEFAULT 0,
  total_messages INTEGER NOT NULL DEFAULT 0,
  avg_session_time NUMERIC(6,1) NOT NULL DEFAULT 0,
  created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE INDEX idx_user_activity_date ON user_activity(date);

-- Last 30 days, oldest first
CREATE VIEW last_30_days_activity AS
SELECT * FROM user_activity
WHERE date > (CURRENT_DATE - INTERVAL '30 days')
ORDER BY date ASC;
"""


def generate_analytics_summary_table_sql() -> str:
    return """
CREATE TABLE analytics_summary (
  id SERIAL PRIMARY KEY,
  total_users INTEGER NOT NULL DEFAULT 0,
  new_users INTEGER NOT NULL DEFAULT 0,
  active_sessions INTEGER NOT NULL DEFAULT 0,
  total_messages INTEGER NOT NULL DEFAULT 0,
  avg_messages_per_user NUMERIC(6,1) NOT NULL DEFAULT 0,
  avg_session_time NUMERIC(6,1) NOT NULL DEFAULT 0,
  registration_rate NUMERIC(5,1) NOT NULL DEFAULT 0,
  retention_rate NUMERIC(5,1) NOT NULL DEFAULT 0,
  bounce_rate NUMERIC(5,1) NOT NULL DEFAULT 0,
  updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

-- Single-row table
CREATE UNIQUE INDEX idx_analytics_summary_singleton ON analytics_summary((id IS NOT NULL));
""" + _timestamp_trigger('analytics_summary')


def generate_user_retention_table_sql() -> str:
    return """
CREATE TABLE user_retention (
  id SERIAL PRIMARY KEY,
  day INTEGER NOT NULL UNIQUE,
  retention_rate NUMERIC(5,1) NOT NULL DEFAULT 0,
  updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE INDEX idx_user_retention_day ON user_retention(day);
""" + _timestamp_trigger('user_retention')


def generate_user_sources_table_sql() -> str:
    return """
CREATE TABLE user_sources (
  id SERIAL PRIMARY KEY,
  source VARCHAR(100) NOT NULL UNIQUE,
  percentage NUMERIC(5,1) NOT NULL DEFAULT 0,
  updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE INDEX idx_user_sources_source ON user_sources(source);
""" + _timestamp_trigger('user_sources')


def all_analytics_tables_sql() -> dict:
    """DDL keyed by table name, as served by the schema endpoint."""
    return {
        'model_usage_stats': generate_model_usage_stats_table_sql(),
        'user_activity': generate_user_activity_table_sql(),
        'analytics_summary': generate_analytics_summary_table_sql(),
        'user_retention': generate_user_retention_table_sql(),
        'user_sources': generate_user_sources_table_sql(),
    }


def delete_model_function_sql() -> str:
    """SECURITY DEFINER delete so model removal is not blocked by row level security."""
    return """
CREATE OR REPLACE FUNCTION public.delete_model(model_id UUID)
RETURNS BOOLEAN
LANGUAGE plpgsql
SECURITY DEFINER
AS $$
DECLARE
  affected INTEGER;
BEGIN
  DELETE FROM public.ai_models WHERE id = model_id;
  GET DIAGNOSTICS affected = ROW_COUNT;
  RETURN affected > 0;
END;
$$;

CREATE OR REPLACE FUNCTION public.create_delete_model_function()
RETURNS VOID
LANGUAGE plpgsql
AS $$
BEGIN
  -- delete_model already exists once this has been created
END;
$$;
"""


def ensure_gender_column_sql() -> str:
    return """
DO $$
BEGIN
  IF NOT EXISTS (
    SELECT FROM information_schema.columns
    WHERE table_name = 'ai_models' AND column_name = 'gender' AND table_schema = 'public'
  ) THEN
    ALTER TABLE public.ai_models
    ADD COLUMN gender VARCHAR DEFAULT 'female';
  END IF;
END
$$;
"""
