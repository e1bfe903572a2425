#!/usr/bin/env python3
"""
Flask Web Server launcher script for the batch image analyzer.
This script handles the imports properly and starts the Flask server.
"""
import sys
import os

# Add the parent directory to Python path (where batch_analyzer is located)
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, parent_dir)

if __name__ == '__main__':
    from batch_analyzer.analyzer_app import create_app

    host = os.environ.get('HOST', '127.0.0.1')
    port = int(os.environ.get('PORT', '5001'))
    app = create_app()

    print("=" * 60)
    print("🚀 Batch Image Analyzer Server")
    print("=" * 60)
    print(f"📍 Server URL: http://{host}:{port}")
    print(f"📷 Analyze: POST http://{host}:{port}/analyze (multipart field 'image')")
    print(f"🔧 Health Check: http://{host}:{port}/health")
    print("=" * 60)
    print("Press Ctrl+C to stop the server")
    print()

    try:
        app.run(
            host=host,
            port=port,
            debug=True,
            use_reloader=False
        )
    except KeyboardInterrupt:
        print("\n\n🛑 Server stopped by user")
    except Exception as e:
        print(f"\n❌ Server failed to start: {e}")
        sys.exit(1)
