"""Iteration loop around a streaming CLI coding agent.

One child process per iteration. Stdout carries newline-delimited JSON events
that are watched for the completion promise and for the token budget; the
child is killed when the budget is exhausted and the loop starts a fresh
iteration with the same prompt. Only session ids are persisted per run; the
agent keeps its own conversation transcripts.
"""
