"""Utility modules for Cellar Tracker."""
