"""Serving - approval API"""
