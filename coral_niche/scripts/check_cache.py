import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'notebooks'))
from niche_config import load_config
from niche_data_readers import LocalCacheProvider


def check_cache(cache_dir=None):
    # Every dataset key the run will request, taken from the config
    config = load_config(cache_dir=cache_dir)
    provider = LocalCacheProvider(config.cache_dir, verbose=False)

    missing_count = 0
    found_count = 0

    print(f"{'='*60}")
    print(f"{'DATASET CACHE REPORT':^60}")
    print(f"{'='*60}")
    print(f"  cache: {config.cache_dir}")

    for key, (dataset, variable, version, resolution) in config.datasets.items():
        print(f"\n📂 Checking [{key}] {dataset}/{variable} v{version} ({resolution})...")
        path = provider.find_cached(dataset, variable, version, resolution)
        if path is None:
            expected = provider.cache_path(dataset, variable, version, resolution)
            print(f"  ❌ MISSING: {os.path.relpath(expected, config.cache_dir)}")
            missing_count += 1
        else:
            size_mb = os.path.getsize(path) / 1e6
            print(f"  ✅ {os.path.basename(path)} ({size_mb:.1f} MB)")
            found_count += 1

    print(f"\n{'='*60}")
    print(f"SUMMARY:")
    print(f"  Datasets Expected: {found_count + missing_count}")
    print(f"  Datasets Cached:   {found_count}")
    print(f"  Datasets Missing:  {missing_count}")
    print(f"{'='*60}")

    if missing_count == 0:
        print("\n🚀 ALL SYSTEMS GO: the local provider can run offline.")
    else:
        print("\n⚠️  ACTION REQUIRED: run once with --provider network, or copy "
              "the missing files to the paths listed above.")
    return missing_count == 0


if __name__ == "__main__":
    ok = check_cache(sys.argv[1] if len(sys.argv) > 1 else None)
    sys.exit(0 if ok else 1)
