"""Worker machine pool and onboarding."""
