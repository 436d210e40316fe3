#!/usr/bin/env python3
"""
VibeWell Booking Core - Main Entry Point
This file helps Railway detect this as a Python project.
The actual FastAPI app is in services/booking/vibewell/main.py
"""

import sys
import os
import subprocess

def main():
    """Main entry point for Railway deployment"""
    print("Starting VibeWell booking core...")

    # Change to the booking service directory
    booking_dir = os.path.join(os.path.dirname(__file__), 'services', 'booking')
    os.chdir(booking_dir)

    # Apply migrations before serving
    if os.getenv('RUN_MIGRATIONS', 'true').lower() in ('true', '1', 'yes'):
        subprocess.run([sys.executable, '-m', 'alembic', 'upgrade', 'head'], check=True)

    # Start the FastAPI server
    cmd = [
        sys.executable, '-m', 'uvicorn',
        'vibewell.main:app',
        '--host', '0.0.0.0',
        '--port', os.getenv('PORT', '8080')
    ]

    print(f"Running: {' '.join(cmd)}")
    subprocess.run(cmd)

if __name__ == '__main__':
    main()
