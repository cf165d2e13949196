"""Core investment lifecycle for auction-investor"""
