"""Tests for the HTTP surface."""
