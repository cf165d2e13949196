"""Operator tooling for auction-investor"""
