"""
Test suite for the Clinic Encounter Engine.

Contains unit tests for the engine services and integration tests for the API.
"""
import os

# Set environment for testing
os.environ["TESTING"] = "1"
