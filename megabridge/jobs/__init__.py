"""Recurring scheduler jobs"""
