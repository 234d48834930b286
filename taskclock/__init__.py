"""Taskclock — persistent cron and one-shot scheduling for agent instructions."""
