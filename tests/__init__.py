"""Tests for the ledger engine; importable as a package so fixtures resolve consistently."""
