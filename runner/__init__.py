"""Process entry points for auction-investor"""
