"""ThreatStudio entry point. Starts backend server."""
import os
import sys


def main():
    root = os.path.dirname(os.path.abspath(__file__))
    sys.path.insert(0, root)

    import uvicorn
    from threatstudio import __version__
    from threatstudio.config import get_settings

    settings = get_settings()

    print("=" * 50)
    print(f"  ThreatStudio v{__version__}")
    print(f"  Inference: {settings.inference_url}")
    print(f"  API Docs: http://{settings.host}:{settings.port}/docs")
    print("=" * 50)

    uvicorn.run("threatstudio.server:app", host=settings.host, port=settings.port, reload=True)


if __name__ == "__main__":
    main()
