"""SafeKeep models package.

  - denial.py — HTTP response builder for rejected guard operations
"""
