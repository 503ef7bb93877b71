"""
HTTP surface: job submission, drain triggers, maintenance and admin views.
"""
