from __future__ import annotations

import asyncpg  # type: ignore[import-untyped]

SCHEMA_SQL = """
create table if not exists teams (
  id text not null,
  league_id text not null,
  season_id text not null,
  name text not null,
  primary key (league_id, season_id, id)
);

create table if not exists matches (
  id text primary key,
  league_id text not null,
  season_id text not null,
  home_team_id text not null,
  away_team_id text not null,
  home_goals integer,
  away_goals integer,
  status text not null default 'scheduled',
  kickoff_at timestamptz
);

create index if not exists matches_league_season_idx on matches (league_id, season_id);

create table if not exists jobs (
  id uuid primary key,
  league_id text not null,
  season_id text not null,
  priority smallint not null default 2 check (priority between 1 and 4),
  status text not null default 'pending'
    check (status in ('pending', 'processing', 'completed', 'failed')),
  attempts integer not null default 0,
  max_attempts integer not null default 3,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now(),
  started_at timestamptz,
  completed_at timestamptz,
  next_run_at timestamptz not null default now(),
  lease_expires_at timestamptz,
  locked_by text,
  last_error text,
  metadata jsonb not null default '{}'::jsonb,
  result jsonb
);

create unique index if not exists jobs_one_active_per_key_idx
  on jobs (league_id, season_id)
  where status in ('pending', 'processing');

create index if not exists jobs_dispatch_idx
  on jobs (priority desc, created_at asc)
  where status = 'pending';

create table if not exists standings (
  league_id text not null,
  season_id text not null,
  version bigint not null,
  updated_at timestamptz not null,
  source text not null,
  entries jsonb not null,
  primary key (league_id, season_id)
);

create table if not exists snapshots (
  id bigserial primary key,
  league_id text not null,
  season_id text not null,
  created_at timestamptz not null,
  description text not null default '',
  size integer not null,
  checksum text not null,
  standings_version bigint not null,
  payload jsonb not null
);

create index if not exists snapshots_league_season_idx on snapshots (league_id, season_id, id desc);

create table if not exists audit_logs (
  id bigserial primary key,
  created_at timestamptz not null,
  job_id uuid,
  league_id text not null,
  season_id text not null,
  action text not null
    check (action in ('standings_committed', 'standings_restored', 'job_failed', 'job_cancelled', 'job_retried')),
  before_hash text,
  after_hash text,
  actor_type text not null check (actor_type in ('system', 'manual')),
  actor_id text,
  details jsonb not null default '{}'::jsonb
);

create index if not exists audit_logs_league_season_idx on audit_logs (league_id, season_id, id desc);

create table if not exists queue_state (
  id smallint primary key default 1 check (id = 1),
  paused boolean not null default false,
  reason text,
  changed_by text,
  changed_at timestamptz
);
"""

TABLES = ("queue_state", "audit_logs", "snapshots", "standings", "jobs", "matches", "teams")


async def apply_schema(conn: asyncpg.Connection) -> None:
    await conn.execute(SCHEMA_SQL)


async def truncate_all(conn: asyncpg.Connection) -> None:
    await conn.execute(f"truncate table {', '.join(TABLES)} restart identity")
