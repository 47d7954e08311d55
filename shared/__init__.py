"""Shared configuration, logging and error helpers"""
