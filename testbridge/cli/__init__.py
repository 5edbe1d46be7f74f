"""CLI module for testbridge."""
