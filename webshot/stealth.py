"""Init script that masks the usual headless-Chromium automation tells."""

from __future__ import annotations

from playwright.async_api import BrowserContext

STEALTH_INIT_SCRIPT = """
(() => {
    Object.defineProperty(Navigator.prototype, 'webdriver', {
        get: () => undefined,
        configurable: true,
    });

    const fakePlugins = [
        { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
        { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai', description: '' },
        { name: 'Native Client', filename: 'internal-nacl-plugin', description: '' },
    ];
    Object.defineProperty(navigator, 'plugins', {
        get: () => {
            const list = fakePlugins.map((plugin) => Object.assign(Object.create(Plugin.prototype), plugin));
            list.item = (index) => list[index] || null;
            list.namedItem = (name) => list.find((plugin) => plugin.name === name) || null;
            list.refresh = () => undefined;
            return list;
        },
    });

    Object.defineProperty(navigator, 'languages', {
        get: () => ['en-US', 'en'],
    });

    if (navigator.permissions && navigator.permissions.query) {
        const originalQuery = navigator.permissions.query.bind(navigator.permissions);
        navigator.permissions.query = (parameters) => (
            parameters && parameters.name === 'notifications'
                ? Promise.resolve({ state: Notification.permission, onchange: null })
                : originalQuery(parameters)
        );
    }

    if (!window.chrome) {
        Object.defineProperty(window, 'chrome', { value: {}, writable: true, configurable: true });
    }
    if (!window.chrome.runtime) {
        window.chrome.runtime = {
            connect: () => ({ onMessage: { addListener: () => undefined }, postMessage: () => undefined }),
            sendMessage: () => undefined,
            id: undefined,
        };
    }

    const frameDescriptor = Object.getOwnPropertyDescriptor(HTMLIFrameElement.prototype, 'contentWindow');
    if (frameDescriptor && frameDescriptor.get) {
        Object.defineProperty(HTMLIFrameElement.prototype, 'contentWindow', {
            get() {
                const frameWindow = frameDescriptor.get.call(this);
                try {
                    if (frameWindow && frameWindow.navigator) {
                        Object.defineProperty(frameWindow.navigator, 'webdriver', {
                            get: () => undefined,
                            configurable: true,
                        });
                    }
                } catch (err) {
                    // cross-origin frames are not reachable
                }
                return frameWindow;
            },
        });
    }
})();
"""


async def install_stealth(context: BrowserContext) -> None:
    """Register the evasion patches so they run before any page script."""

    await context.add_init_script(STEALTH_INIT_SCRIPT)
