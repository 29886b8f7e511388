"""Unit tests for individual gateway components"""
