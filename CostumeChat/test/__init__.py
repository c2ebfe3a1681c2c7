"""
Tests for the CostumeChat messaging client.
"""
