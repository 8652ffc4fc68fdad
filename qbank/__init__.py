"""
Question bank approval workflow.

Questions are gathered, reviewed by a processor between every producing stage,
authored, explained and finally completed or rejected.
"""
