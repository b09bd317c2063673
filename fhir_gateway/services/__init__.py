"""Subscription lifecycle services"""
