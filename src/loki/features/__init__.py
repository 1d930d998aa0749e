"""
Feature engines: meme contest, nickname lottery, timeout statistics, event
bus, text responses and scoreboards.
"""
